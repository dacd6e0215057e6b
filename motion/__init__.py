"""Motion: nearby event discovery with social visibility and RSVP capacity."""

"""orderflow: order intake, inventory reservation saga and change-event publishing."""

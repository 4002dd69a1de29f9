"""Domain packages for the messaging core."""

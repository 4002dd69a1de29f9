"""Privacy settings and the permission rules built on them."""

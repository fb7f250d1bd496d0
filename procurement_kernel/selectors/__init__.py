"""Read-only query selectors returning DTO views."""

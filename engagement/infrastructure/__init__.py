"""Infrastructure modules: database, change notifications and scheduling."""

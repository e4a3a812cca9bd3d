"""Pipeline declarations runnable with ``headfactory <name>``."""

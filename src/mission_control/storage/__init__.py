"""SQLite storage primitives shared by repositories."""

"""SQLite store, HTTP trigger surface and entry points for the instance sweep."""

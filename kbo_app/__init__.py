"""KBO registry importer application package."""

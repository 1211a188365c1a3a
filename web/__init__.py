"""JSON API for the image renaming pipeline."""

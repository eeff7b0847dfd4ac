"""Domain services for the generation pipeline."""

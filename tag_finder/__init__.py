"""tag-finder: find the tags of a registry repository that point at a digest."""

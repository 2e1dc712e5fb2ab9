"""Feature modules of the featuremap app."""

"""Collection-name resolution."""

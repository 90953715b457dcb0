"""Source enumeration."""

"""Knowledge base storage."""

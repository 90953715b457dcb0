"""Live sampling and schema inference."""

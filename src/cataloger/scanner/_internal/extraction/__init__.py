"""Type and operation extraction from C# syntax trees."""

"""Domain model: pure data classes and value objects."""

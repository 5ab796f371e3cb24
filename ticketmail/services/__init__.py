"""Service layer modules."""

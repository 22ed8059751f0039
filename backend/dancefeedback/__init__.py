"""Dance feedback backend."""

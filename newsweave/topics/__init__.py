"""Topic clustering and headline synthesis."""

"""ticketflow.utils — shared blueprint helpers and JSON error responses."""

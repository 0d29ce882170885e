"""ticketflow.core — framework-agnostic building blocks (exception hierarchy)."""

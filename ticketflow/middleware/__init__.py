"""ticketflow.middleware — logging, request timing, rate limits and startup diagnostics."""

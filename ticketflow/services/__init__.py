"""ticketflow.services — business logic. Services own commits and raise core exceptions."""

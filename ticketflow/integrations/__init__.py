"""ticketflow.integrations — external collaborators.

The engine talks to the blob store and the user directory only through the
abstract interfaces defined here, never through a concrete backend directly.
"""

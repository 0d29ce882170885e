"""
Ticketflow
Blueprint registry.
"""

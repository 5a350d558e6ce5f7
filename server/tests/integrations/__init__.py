"""
Acquirer adapter tests against stubbed gateway HTTP APIs.
"""

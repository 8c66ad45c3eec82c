"""
Token service: mints short-lived realtime credentials.

The upstream API key never leaves this service. Clients authenticate with
their user access token and receive a single-use ephemeral token.
"""

"""Identity bridge between bearer tokens and chat identities."""

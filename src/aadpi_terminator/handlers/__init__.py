"""
Handlers package - Contains the kopf event handlers.

- identity.py: AzureIdentityTerminator lifecycle (create, update, delete, resync)
"""

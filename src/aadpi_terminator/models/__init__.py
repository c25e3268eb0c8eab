"""
Models package - Pydantic models for type-safe resource handling.

Defines data models for:
- AzureIdentityTerminator specifications and status
- The provisioning journal kept on each resource
"""

"""
aadpi-terminator - A Kubernetes operator for aad-pod-identity service principals.

Each AzureIdentityTerminator resource gets its own Azure AD application,
service principal and Reader role assignment on the node resource group,
exposed to pods through an AzureIdentity and AzureIdentityBinding.
"""

__version__ = "0.1.0"

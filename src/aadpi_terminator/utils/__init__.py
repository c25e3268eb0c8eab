"""
Utils package - Collaborators of the reconciliation engine.

Contains helper modules for:
- Azure AD token acquisition and the Graph/ARM client
- Kubernetes resource access and manifest synthesis
- Circuit breaking for identity provider calls
"""

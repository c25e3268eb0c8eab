"""
Tests package - Test suite for the aadpi-terminator operator.

Contains:
- unit/: Unit tests driven by in-memory fakes of the cluster and Azure AD
"""

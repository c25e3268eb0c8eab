"""
Constants used throughout the aadpi-terminator operator.

This module defines all constant values used by the operator including:
- The custom resource coordinates and the finalizer token
- Dependent object coordinates (aad-pod-identity resources)
- Labels and annotations placed on managed objects
- Azure role and API constants
- Status phase and condition constants
"""

# IdentityRequest custom resource
API_GROUP = "azidterminator.io"
API_VERSION = "v1alpha1"
IDENTITY_REQUEST_KIND = "AzureIdentityTerminator"
IDENTITY_REQUEST_PLURAL = "azureidentityterminators"

# Finalizer blocking physical deletion until external teardown completes
IDENTITY_FINALIZER = "finalizer.aadpi-terminator.io"

# aad-pod-identity dependent objects
POD_IDENTITY_GROUP = "aadpodidentity.k8s.io"
POD_IDENTITY_VERSION = "v1"
AZURE_IDENTITY_KIND = "AzureIdentity"
AZURE_IDENTITY_PLURAL = "azureidentities"
AZURE_IDENTITY_BINDING_KIND = "AzureIdentityBinding"
AZURE_IDENTITY_BINDING_PLURAL = "azureidentitybindings"
# AzureIdentity type 1 = service principal with client secret
AZURE_IDENTITY_TYPE_SERVICE_PRINCIPAL = 1

# Secret payload key holding the generated credential
CLIENT_SECRET_KEY = "clientSecret"

# Label constants for resource identification and management
OPERATOR_LABEL_KEY = "azidterminator.io/managed-by"
OPERATOR_LABEL_VALUE = "aadpi-terminator"

# Annotation constants
CLIENT_ID_ANNOTATION = "azidterminator.io/client-id"
JOURNAL_ANNOTATION = "azidterminator.io/provisioning-journal"

# Azure constants
# Built-in "Reader" role definition
READER_ROLE_DEFINITION_ID = "acdd72a7-3385-48ef-bd42-f606fba81ae7"
ROLE_ASSIGNMENT_API_VERSION = "2022-04-01"
GRAPH_SCOPE_SUFFIX = "/.default"

# Status phase constants
PHASE_READY = "Ready"
PHASE_FAILED = "Failed"
PHASE_RECONCILING = "Reconciling"
PHASE_DEGRADED = "Degraded"

# Condition type constants (following Kubernetes conventions)
CONDITION_READY = "Ready"
CONDITION_AVAILABLE = "Available"
CONDITION_PROGRESSING = "Progressing"
CONDITION_RECONCILING = "Reconciling"
CONDITION_DEGRADED = "Degraded"

# Condition status constants
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

# Retry configuration for role assignment creation
DEFAULT_ROLE_ASSIGNMENT_MAX_ATTEMPTS = 8
DEFAULT_ROLE_ASSIGNMENT_INITIAL_DELAY = 2.0
DEFAULT_ROLE_ASSIGNMENT_MAX_DELAY = 30.0
DEFAULT_BACKOFF_FACTOR = 2.0

# Generated credential entropy (bytes fed to secrets.token_urlsafe)
CREDENTIAL_ENTROPY_BYTES = 32

# Success message templates
SUCCESS_PROVISIONING = "Azure AD identity provisioned and bound"
SUCCESS_CONVERGED = "Azure AD identity is in sync"
SUCCESS_DELETION = "Azure AD identity and dependent objects removed"

"""Form version lifecycle and activation for storefront signup forms.

formpublisher provides:
- A field composition model with mandatory core fields and paired rows
- Named, persisted form versions with a single active version per store
- A publish/withdraw orchestrator that keeps the generated script, its
  storefront registration and the durable state consistent
- Step-level progress snapshots for every publish and withdraw
- Deduplicated signup intake with admin review

Basic usage:
    >>> from formpublisher.runtime import FormRuntime
    >>> runtime = FormRuntime()
    >>> session = runtime.session("store_1")
    >>> print([f.label for f in session.composition.fields])
    ['First Name', 'Last Name', 'Email', 'Password']
"""

__version__ = "0.1.0"
__author__ = "FormPublisher Team"

# Version info
VERSION = (0, 1, 0)

# Core exports
from formpublisher.orchestrator import ActivationOrchestrator, OperationResult
from formpublisher.runtime import EditingSession, FormRuntime

# Package metadata
__all__ = [
    "__version__",
    "VERSION",
    "ActivationOrchestrator",
    "OperationResult",
    "EditingSession",
    "FormRuntime",
]

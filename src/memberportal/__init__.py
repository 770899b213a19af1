"""Member portal core.

Approval-gated member portal: application status reconciliation and
realtime 1:1 messaging between an approved member and an administrator.

Rendering, navigation and styling live in the UI layer, which consumes the
session facade in memberportal.services.session.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]

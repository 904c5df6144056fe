"""HTTP client for the capauth API.

Security notes:
- Treat server responses as untrusted input.
- API keys are sent as a header and never printed.
"""

from .http import CapAuthHttpClient, HttpResponse  # noqa: F401

"""VendorSign - certificate lifecycle and document signing pipeline.

Issues short-lived personal signing certificates through an external
certificate authority and produces stamped, CMS-signed PDF documents
from a durable job queue.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]

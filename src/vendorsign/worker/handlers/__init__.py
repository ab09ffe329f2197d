"""Job handlers for the VendorSign worker.

- signing: stamp, sign and store documents for queued sign jobs
"""

from vendorsign.worker.handlers.signing import sign_document_handler

__all__ = ["sign_document_handler"]

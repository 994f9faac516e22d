"""pilot_shared — Shared library for the Pilot intake Lambda functions.

Provides:
    - PostgreSQL connection pool (lazy, process-wide)
    - Key-value state store and kit_id-keyed entity store
    - PDF email dispatcher (SNS)
    - HTTP response helpers with CORS
    - API error taxonomy

Shipped as a Lambda layer (python/ directory) and installable for tests.
"""

__version__ = "1.0.0"

"""Shared defaults for TrustMesh components."""

# Identity documents
DEFAULT_TRUST_DOMAIN = "example.org"
DEFAULT_SVID_TTL_SECONDS = 3600
MAX_SVID_TTL_SECONDS = 3600
CLOCK_SKEW_SECONDS = 30

# Key authority
ROTATION_GRACE_SECONDS = 300
SIGNING_TIMEOUT_SECONDS = 2.0
SIGNING_RETRIES = 3

# Attestation
EVIDENCE_MAX_AGE_SECONDS = 60
VERIFIER_TIMEOUT_SECONDS = 5.0

# Federation
BUNDLE_REFRESH_HINT_SECONDS = 300
FEDERATION_POLL_INTERVAL_SECONDS = 3600
FEDERATION_TIMEOUT_SECONDS = 10.0
FEDERATION_RETRIES = 3

# Policy
POLICY_CACHE_TTL_SECONDS = 30
POLICY_CACHE_MAX_ENTRIES = 10_000

# Server
MAX_CONCURRENCY = 64
EVENT_QUEUE_SIZE = 10000

SPIFFE_SCHEME = "spiffe://"

"""Prometheus metrics for the token-session core."""

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "sessionguard_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "sessionguard_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

REFRESH_ROTATIONS = Counter(
    "sessionguard_refresh_rotations_total",
    "Refresh token rotation attempts by outcome",
    ["outcome"],  # success | reused | race | invalid | failed
)
REFRESH_REUSE_DETECTED = Counter(
    "sessionguard_refresh_reuse_detected_total",
    "Presentations of an already-rotated refresh token",
)
REFRESH_TOKEN_COLLISIONS = Counter(
    "sessionguard_refresh_token_collisions_total",
    "Refresh token hash collisions retried during issuance",
)
REFRESH_BEST_EFFORT_ROTATIONS = Counter(
    "sessionguard_refresh_best_effort_rotations_total",
    "Rotations run without a database transaction (reduced safety)",
)
REFRESH_ROTATION_INCONSISTENCIES = Counter(
    "sessionguard_refresh_rotation_inconsistencies_total",
    "Best-effort rotations that revoked a token without issuing its successor",
)
REFRESH_TOKENS_REVOKED = Counter(
    "sessionguard_refresh_tokens_revoked_total",
    "Refresh tokens revoked outside of rotation",
    ["reason"],  # request | reuse
)

# =============================================================================
# Zero-Shot Inspection - Shared Package
# =============================================================================
# Data contracts shared between the caller, the inference worker, and the
# session server client.
# =============================================================================

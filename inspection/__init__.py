# =============================================================================
# Zero-Shot Inspection - Detector Package
# =============================================================================
# On-device components: label embedding store, similarity engine, isolated
# inference worker and its executor handle, detection state machine, camera
# capture and the session client.  Only the final full-resolution capture for
# each step leaves the device.
# =============================================================================

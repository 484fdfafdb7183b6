# =============================================================================
# Zero-Shot Inspection - Error Taxonomy
# =============================================================================
# SetupError and LoadError surface to the user with a retry affordance.
# FrameError and DegenerateEmbedding are absorbed: the frame is skipped and
# no detection transition happens.
# =============================================================================


class InspectionError(Exception):
    """Base class for all detector errors."""


class SetupError(InspectionError):
    """
    Bad configuration: empty label set, dimension mismatch, or a label with
    no embedding.  Fatal to the triggering operation only.
    """


class UsageError(SetupError):
    """An executor operation was called in a state that does not allow it."""


class LoadError(InspectionError):
    """
    Model or backend failure during initialization.

    Terminal for the executor instance; recovering requires a new executor.
    """


class FrameError(InspectionError):
    """Per-frame decode or inference fault.  The frame is treated as skipped."""


class DegenerateEmbedding(FrameError):
    """The image embedding has zero L2 norm and cannot be normalized."""


class UploadError(InspectionError):
    """The session server rejected a capture.  Detection resumes on the same step."""

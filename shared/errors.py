# =============================================================================
# Embedding Lens - Error Taxonomy
# =============================================================================
# Exceptions raised by the encoder runtime and the lens orchestrator. Fatal
# errors drive the session into its terminal ERROR state; InferenceFailure is
# fatal only when configured so (see Config.inference_errors_fatal).
# =============================================================================


class LensError(Exception):
    """Base class for all Embedding Lens errors."""


class LoadFailure(LensError):
    """A model, processor or tokenizer failed to initialize."""


class PermissionDenied(LensError):
    """The camera could not be opened or delivered no frames."""


class InferenceFailure(LensError):
    """A single image or text encode call failed."""


class ProtocolError(LensError):
    """A message did not match the orchestrator/runtime protocol."""

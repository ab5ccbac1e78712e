# =============================================================================
# Embedding Lens - Shared Package
# =============================================================================
# Contracts used on both sides of the process boundary: the message protocol
# between the lens orchestrator and the encoder runtime, the error taxonomy,
# similarity scoring, and the rendering-layer snapshot schemas.
# =============================================================================

# =============================================================================
# Embedding Lens - Encoder Runtime Package
# =============================================================================
# This package runs inside an isolated worker process. It owns the CLIP
# vision and text towers, the text-embedding cache and the current image
# embedding, and answers protocol requests from the lens orchestrator.
# =============================================================================

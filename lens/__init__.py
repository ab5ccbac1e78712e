# =============================================================================
# Embedding Lens - Lens Package
# =============================================================================
# This package contains the orchestrator side: camera capture, segmentation,
# the query book, the encoder runtime client, the session state machine and
# the rendering-layer API. It never touches model weights directly; all
# encoding happens in the isolated encoder runtime process.
# =============================================================================

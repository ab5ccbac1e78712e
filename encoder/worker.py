# =============================================================================
# Embedding Lens - Encoder Runtime Worker Loop
# =============================================================================
# Entry point of the isolated encoder process. Reads request dicts from one
# queue, validates them against the protocol, dispatches them against a
# single RuntimeContext, and writes event dicts to the other queue. Requests
# are handled strictly in arrival order, which is what lets the orchestrator
# match image results to requests without an id.
# =============================================================================

import logging
import os
from typing import Callable, Optional

from encoder.runtime import RuntimeContext, handle_request
from shared.errors import ProtocolError
from shared.messages import ErrorEvent, ShutdownRequest, parse_request, to_wire

logger = logging.getLogger(__name__)


def run_worker(
    requests,
    events,
    config,
    context_factory: Optional[Callable[..., RuntimeContext]] = None,
) -> None:
    """
    Serve protocol requests until a ``shutdown`` request arrives.

    Args:
        requests:        Queue of request dicts (orchestrator -> runtime).
        events:          Queue of event dicts (runtime -> orchestrator).
        config:          The Config instance for model id, device and cache size.
        context_factory: Builds the RuntimeContext from ``config``; defaults
                         to ``RuntimeContext.from_config``.
    """
    # Spawned processes start without the parent's logging handlers
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    factory = context_factory or RuntimeContext.from_config
    ctx = factory(config)
    logger.info("Encoder runtime started (pid=%d)", os.getpid())

    while True:
        payload = requests.get()
        try:
            request = parse_request(payload)
        except ProtocolError as exc:
            logger.error("%s", exc)
            events.put(to_wire(ErrorEvent(message=str(exc), fatal=False)))
            continue

        if isinstance(request, ShutdownRequest):
            break

        for event in handle_request(ctx, request):
            events.put(to_wire(event))

    logger.info("Encoder runtime stopped.")

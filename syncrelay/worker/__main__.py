from __future__ import annotations

import logging

from syncrelay.core.config import get_settings
from syncrelay.core.otel import setup_worker_tracing
from syncrelay.worker.runner import WorkerConfig, run_worker_forever
from syncrelay.worker.runtime import build_runtime


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    settings = get_settings()
    tracing = setup_worker_tracing(settings=settings)
    runtime = build_runtime(settings=settings)
    try:
        run_worker_forever(config=WorkerConfig.from_settings(settings), runtime=runtime)
    finally:
        runtime.close()
        if tracing.shutdown is not None:
            tracing.shutdown()


if __name__ == "__main__":
    main()

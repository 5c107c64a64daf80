from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from dispatchgate.config import DispatchSettings
from dispatchgate.outbox.channel import ChannelAdapter
from dispatchgate.outbox.worker import OutboxWorker
from dispatchgate.pipeline.orchestrator import MutationPipeline
from dispatchgate.storage import create_storage_backend
from dispatchgate.storage.base import StorageBackend
from dispatchgate.storage.schema import init_db


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: DispatchSettings
    storage: StorageBackend
    pipeline: MutationPipeline
    worker: OutboxWorker
    schema_version: Optional[str]


def create_runtime(
    settings: Optional[DispatchSettings] = None,
    *,
    storage: Optional[StorageBackend] = None,
    adapter: Optional[ChannelAdapter] = None,
) -> Runtime:
    """Wire storage, migrations, the pipeline and the outbox worker from one settings object."""
    resolved = settings or DispatchSettings.from_env()
    backend = storage or create_storage_backend(resolved)
    version = init_db(backend)
    logger.info("storage ready: backend=%s schema=%s", backend.name, version)
    return Runtime(
        settings=resolved,
        storage=backend,
        pipeline=MutationPipeline(backend, resolved),
        worker=OutboxWorker(backend, resolved, adapter=adapter),
        schema_version=version,
    )

"""Wire stores, persistence, the model client and the send pipeline together."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from .attachments import (
    AttachmentBackend,
    AttachmentRef,
    AttachmentStore,
    FileAttachmentBackend,
    MemoryAttachmentBackend,
)
from .client import HttpModelClient, ModelClient
from .exceptions import UnknownSessionError
from .models import Session
from .persistence import SessionPersistence, SessionSaver, export_markdown
from .pipeline import SendPipeline, TurnRequest, TurnResult
from .session_store import SessionState, SessionStore
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)


class ChatEngine:
    """Process-wide chat state: one session store, one attachment store, one pipeline."""

    def __init__(
        self,
        store: SessionStore,
        attachments: AttachmentStore,
        client: ModelClient,
        *,
        model: str | None = None,
        image_model: str | None = None,
        saver: SessionSaver | None = None,
        export_dir: str | Path | None = None,
        owns_client: bool = False,
    ) -> None:
        self.store = store
        self.attachments = attachments
        self.client = client
        pipeline_kwargs: dict[str, Any] = {}
        if model:
            pipeline_kwargs["model"] = model
        if image_model:
            pipeline_kwargs["image_model"] = image_model
        self.pipeline = SendPipeline(store, attachments, client, **pipeline_kwargs)
        self.saver = saver
        self.export_dir = Path(export_dir).expanduser() if export_dir else None
        self.tasks = TaskManager()
        self._owns_client = owns_client
        if saver is not None:
            store.subscribe(saver)
        store.ensure_session()

    @classmethod
    def from_config(
        cls, config: dict[str, dict[str, Any]], client: ModelClient | None = None
    ) -> ChatEngine:
        """Build an engine from a validated config mapping (see ``load_config``)."""
        storage_cfg = config["storage"]
        client_cfg = config["client"]

        backend: AttachmentBackend
        saver: SessionSaver | None = None
        state = SessionState()
        if storage_cfg["enabled"]:
            backend = FileAttachmentBackend(
                storage_cfg["attachments_dir"],
                max_total_bytes=storage_cfg["max_attachment_bytes"] or None,
            )
            persistence = SessionPersistence(storage_cfg["sessions_path"])
            state = persistence.load()
            saver = SessionSaver(
                persistence, min_interval_seconds=storage_cfg["save_interval_seconds"]
            )
        else:
            backend = MemoryAttachmentBackend()

        owns_client = client is None
        model_client = client or HttpModelClient(
            base_url=client_cfg["base_url"],
            timeout=client_cfg["timeout"],
            retries=client_cfg["retries"],
            retry_backoff_seconds=client_cfg["retry_backoff_seconds"],
        )
        LOGGER.info(
            "engine.ready",
            extra={
                "event": "engine.ready",
                "sessions": len(state.sessions),
                "persistent": storage_cfg["enabled"],
            },
        )
        return cls(
            SessionStore(state),
            AttachmentStore(backend),
            model_client,
            model=client_cfg["model"],
            image_model=client_cfg["image_model"],
            saver=saver,
            export_dir=storage_cfg.get("export_dir"),
            owns_client=owns_client,
        )

    @property
    def sessions(self) -> tuple[Session, ...]:
        return self.store.sessions

    @property
    def current_session(self) -> Session:
        return self.store.ensure_session()

    def new_session(self) -> Session:
        return self.store.create_session()

    def select_session(self, session_id: str) -> Session:
        if not self.store.select_session(session_id):
            raise UnknownSessionError(f"Session {session_id!r} does not exist.")
        return self.current_session

    def delete_session(self, session_id: str) -> None:
        if self.store.get(session_id) is None:
            raise UnknownSessionError(f"Session {session_id!r} does not exist.")
        self.store.delete_session(session_id)
        self.flush()

    async def send(self, request: TurnRequest) -> TurnResult | None:
        """Run a turn to completion and flush the settled state to disk."""
        try:
            return await self.pipeline.send(request)
        finally:
            self.flush()

    def submit(self, request: TurnRequest) -> asyncio.Task[TurnResult | None]:
        """Run a turn in the background; the task keeps going if its session is deleted."""
        return self.tasks.spawn(self.send(request), name="turn")

    async def resolve_attachment(self, ref: str | AttachmentRef) -> str | None:
        return await self.attachments.resolve(ref)

    def edit_image_request(
        self, ref: str | AttachmentRef, text: str = "", session_id: str | None = None
    ) -> TurnRequest:
        """Build an image-mode turn that reuses an already stored image."""
        token = ref if isinstance(ref, str) else ref.token
        return TurnRequest(
            text=text, attachments=(token,), image_mode=True, session_id=session_id
        )

    def export_session(self, session_id: str, directory: str | Path | None = None) -> Path:
        session = self.store.get(session_id)
        if session is None:
            raise UnknownSessionError(f"Session {session_id!r} does not exist.")
        target = directory or self.export_dir or Path.cwd()
        return export_markdown(session, target)

    def flush(self) -> bool:
        if self.saver is None:
            return True
        return self.saver.flush()

    async def aclose(self) -> None:
        """Let background turns finish, persist, and release the HTTP client."""
        await self.tasks.await_all()
        self.flush()
        closer = getattr(self.client, "aclose", None)
        if self._owns_client and closer is not None:
            await closer()

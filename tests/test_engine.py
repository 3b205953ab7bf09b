"""Tests for ChatEngine wiring, persistence and lifecycle."""

from __future__ import annotations

from collections.abc import AsyncIterator
import json
import tempfile
from pathlib import Path
from typing import Any
import unittest

from chatstream.attachments import (
    AttachmentStore,
    FileAttachmentBackend,
    MemoryAttachmentBackend,
    StoredAttachment,
)
from chatstream.client import ModelRequest, ModelResponse, SingleShotResponse, StreamingResponse
from chatstream.config import load_config
from chatstream.engine import ChatEngine
from chatstream.exceptions import UnknownSessionError
from chatstream.pipeline import TurnOutcome, TurnRequest
from chatstream.session_store import SessionStore

PNG_URI = "data:image/png;base64,iVBORw0KGgo="
EDITED_URI = "data:image/png;base64,RURJVEVE"


async def _iterate(*items: str) -> AsyncIterator[str]:
    for item in items:
        yield item


class FakeClient:
    """Streams a fixed reply for chat turns and returns an image for image turns."""

    def __init__(self) -> None:
        self.requests: list[ModelRequest] = []
        self.closed = False

    async def send(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if request.options.image_mode:
            return SingleShotResponse(text="Edited", image=EDITED_URI)
        return StreamingResponse(_iterate(json.dumps({"text": f"echo: {request.message}"})))

    async def aclose(self) -> None:
        self.closed = True


def _config(root: Path, **storage: Any) -> dict[str, dict[str, Any]]:
    config = load_config(config_path=root / "config" / "config.toml")
    config["storage"].update(
        {
            "sessions_path": str(root / "state" / "sessions.json"),
            "attachments_dir": str(root / "state" / "attachments"),
            "export_dir": str(root / "exports"),
            "save_interval_seconds": 0.0,
        }
    )
    config["storage"].update(storage)
    return config


class ChatEngineTests(unittest.IsolatedAsyncioTestCase):
    """Validate engine-level operations on top of the pipeline."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.client = FakeClient()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _engine(self, **storage: Any) -> ChatEngine:
        return ChatEngine.from_config(_config(self.root, **storage), client=self.client)

    async def test_fresh_engine_has_a_current_session(self) -> None:
        engine = self._engine()
        self.assertEqual(len(engine.sessions), 1)
        self.assertEqual(engine.current_session.id, engine.sessions[0].id)
        self.assertIsInstance(engine.attachments.backend, FileAttachmentBackend)

    async def test_sessions_survive_a_restart(self) -> None:
        engine = self._engine()
        result = await engine.send(TurnRequest(text="hello", attachments=(PNG_URI,)))
        self.assertEqual(result.outcome, TurnOutcome.COMPLETED)
        await engine.aclose()

        reopened = self._engine()
        session = reopened.current_session
        self.assertEqual(session.id, result.session_id)
        self.assertEqual(session.title, "hello")
        user, reply = session.messages
        self.assertEqual(reply.text, "echo: hello")
        self.assertIsInstance(user.images[0], StoredAttachment)
        self.assertEqual(await reopened.resolve_attachment(user.images[0]), PNG_URI)

    async def test_new_select_and_unknown_select(self) -> None:
        engine = self._engine()
        first = engine.current_session
        second = engine.new_session()
        self.assertEqual(engine.current_session.id, second.id)
        self.assertEqual(engine.select_session(first.id).id, first.id)
        with self.assertRaises(UnknownSessionError):
            engine.select_session("missing")

    async def test_deleting_the_only_session_persists_a_fresh_one(self) -> None:
        engine = self._engine()
        only = engine.current_session
        engine.delete_session(only.id)
        self.assertEqual(len(engine.sessions), 1)
        self.assertNotEqual(engine.current_session.id, only.id)

        reopened = self._engine()
        self.assertEqual([s.id for s in reopened.sessions], [engine.current_session.id])

    async def test_deleting_an_unknown_session_raises(self) -> None:
        engine = self._engine()
        before = [s.id for s in engine.sessions]
        with self.assertRaises(UnknownSessionError):
            engine.delete_session("missing")
        self.assertEqual([s.id for s in engine.sessions], before)


    async def test_submit_runs_in_background_until_aclose(self) -> None:
        engine = self._engine()
        task = engine.submit(TurnRequest(text="later"))
        await engine.aclose()
        self.assertTrue(task.done())
        self.assertEqual(task.result().outcome, TurnOutcome.COMPLETED)
        self.assertFalse(self.client.closed)

    async def test_edit_request_reuses_the_stored_image(self) -> None:
        engine = self._engine(enabled=False)
        backend = engine.attachments.backend
        self.assertIsInstance(backend, MemoryAttachmentBackend)

        first = await engine.send(TurnRequest(text="look", attachments=(PNG_URI,)))
        original = engine.store.get(first.session_id).find_message(first.user_message_id)
        ref = original.images[0]
        self.assertEqual(len(backend), 1)

        edit = await engine.send(engine.edit_image_request(ref, text="make it blue"))
        session = engine.store.get(edit.session_id)
        edit_message = session.find_message(edit.user_message_id)
        self.assertEqual(edit_message.images, (ref,))
        reply = session.find_message(edit.placeholder_id)
        self.assertEqual(reply.text, "Edited")
        self.assertEqual(len(backend), 2)
        self.assertEqual(self.client.requests[-1].attachments, [PNG_URI])
        self.assertEqual(self.client.requests[-1].model, engine.pipeline.image_model)
        self.assertEqual(await engine.resolve_attachment(reply.generated_image), EDITED_URI)

    async def test_storage_disabled_writes_nothing(self) -> None:
        engine = self._engine(enabled=False)
        await engine.send(TurnRequest(text="hi"))
        await engine.aclose()
        self.assertFalse((self.root / "state").exists())
        self.assertTrue(engine.flush())

    async def test_export_session_writes_markdown(self) -> None:
        engine = self._engine()
        result = await engine.send(TurnRequest(text="hi"))
        path = engine.export_session(result.session_id)
        self.assertEqual(path.parent, self.root / "exports")
        self.assertIn("echo: hi", path.read_text(encoding="utf-8"))
        with self.assertRaises(UnknownSessionError):
            engine.export_session("missing")

    async def test_owned_client_is_closed(self) -> None:
        engine = ChatEngine(SessionStore(), AttachmentStore(), self.client, owns_client=True)
        self.assertIsNotNone(engine.current_session)
        await engine.aclose()
        self.assertTrue(self.client.closed)


if __name__ == "__main__":
    unittest.main()

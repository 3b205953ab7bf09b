"""Tests for CLI entrypoint wiring."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import redirect_stderr, redirect_stdout
import io
import json
import tempfile
from pathlib import Path
import unittest
from unittest.mock import patch

from chatstream.__main__ import main
from chatstream.attachments import encode_data_uri
from chatstream.client import ModelRequest, ModelResponse, SingleShotResponse, StreamingResponse
from chatstream.exceptions import RequestFailureError


async def _iterate(*items: str) -> AsyncIterator[str]:
    for item in items:
        yield item


class FakeClient:
    """Stand-in for HttpModelClient used through the CLI."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.requests: list[ModelRequest] = []
        self.closed = False

    async def send(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if self.fail:
            raise RequestFailureError("Backend unavailable.")
        if request.options.image_mode:
            return SingleShotResponse(text="Here", image=encode_data_uri(b"PNGDATA"))
        return StreamingResponse(
            _iterate(
                json.dumps({"text": "Hel"}),
                json.dumps({"text": "lo", "grounding": [{"title": "Docs", "uri": "https://d"}]}),
            )
        )

    async def aclose(self) -> None:
        self.closed = True


class MainEntrypointTests(unittest.TestCase):
    """Validate top-level main() behavior."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.config_path = self.root / "config.toml"
        state_dir = (self.root / "state").as_posix()
        self.config_path.write_text(
            f"""
[storage]
sessions_path = "{state_dir}/sessions.json"
attachments_dir = "{state_dir}/attachments"
export_dir = "{state_dir}/exports"
save_interval_seconds = 0.0
            """.strip(),
            encoding="utf-8",
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _run(self, *argv: str, client: FakeClient | None = None) -> tuple[int, str, str]:
        fake = client or FakeClient()
        stdout, stderr = io.StringIO(), io.StringIO()
        with patch("chatstream.__main__.configure_logging"), patch(
            "chatstream.engine.HttpModelClient", return_value=fake
        ), redirect_stdout(stdout), redirect_stderr(stderr):
            code = main(["--config", str(self.config_path), *argv])
        return code, stdout.getvalue(), stderr.getvalue()

    def test_version_flag(self) -> None:
        stdout = io.StringIO()
        with redirect_stdout(stdout):
            self.assertEqual(main(["--version"]), 0)
        self.assertTrue(stdout.getvalue().startswith("chatstream "))

    def test_send_streams_reply_and_sources(self) -> None:
        client = FakeClient()
        code, out, _ = self._run("Say hello", "--web-search", client=client)
        self.assertEqual(code, 0)
        self.assertIn("Hello\n", out)
        self.assertIn("[source] Docs: https://d", out)
        self.assertTrue(client.requests[0].options.web_search)
        self.assertTrue(client.closed)

        code, out, _ = self._run("--list")
        self.assertEqual(code, 0)
        self.assertIn("Say hello", out)
        self.assertIn("(2 messages)", out)

    def test_image_mode_saves_generated_image(self) -> None:
        source = self.root / "cat.png"
        source.write_bytes(b"\x89PNG")
        target = self.root / "out.png"
        code, out, _ = self._run(
            "make it blue",
            "--image",
            str(source),
            "--image-mode",
            "--save-image",
            str(target),
        )
        self.assertEqual(code, 0)
        self.assertEqual(target.read_bytes(), b"PNGDATA")
        self.assertIn("[image] saved img_", out)

    def test_failed_turn_exits_non_zero(self) -> None:
        code, _, err = self._run("hi", client=FakeClient(fail=True))
        self.assertEqual(code, 1)
        self.assertIn("Error: Backend unavailable. Please try again.", err)

    def test_empty_prompt_exits_non_zero(self) -> None:
        code, _, err = self._run()
        self.assertEqual(code, 1)
        self.assertIn("Nothing to send.", err)

    def test_unknown_session_exits_with_usage_code(self) -> None:
        code, _, err = self._run("hi", "--session", "missing")
        self.assertEqual(code, 2)
        self.assertIn("missing", err)

    def test_new_session_then_delete(self) -> None:
        self._run("first")
        code, out, _ = self._run("--new", "second")
        self.assertEqual(code, 0)
        _, listing, _ = self._run("--list")
        lines = [line for line in listing.splitlines() if line.strip()]
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[0].startswith("*"))

        session_id = lines[1].split()[0]
        code, out, _ = self._run("--delete", session_id)
        self.assertEqual(code, 0)
        self.assertIn(session_id, out)
        _, listing, _ = self._run("--list")
        self.assertNotIn(session_id, listing)

    def test_deleting_unknown_session_exits_with_usage_code(self) -> None:
        self._run("first")
        code, out, err = self._run("--delete", "missing")
        self.assertEqual(code, 2)
        self.assertNotIn("Deleted", out)
        self.assertIn("missing", err)
        _, listing, _ = self._run("--list")
        self.assertIn("first", listing)

    def test_models_flag_lists_configured_models(self) -> None:
        config = self.config_path.read_text(encoding="utf-8")
        self.config_path.write_text(
            config
            + '\n\n[client]\nmodel = "fast"\nmodels = ["deep", "fast"]\nimage_model = "painter"\n',
            encoding="utf-8",
        )
        code, out, _ = self._run("--models")
        self.assertEqual(code, 0)
        self.assertEqual(out.splitlines(), ["  deep", "* fast", "  image: painter"])


if __name__ == "__main__":
    unittest.main()

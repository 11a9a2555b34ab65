from __future__ import annotations

import sys
import tempfile
import unittest
from pathlib import Path

from mcp_session.rebuild import CommandRebuilder


class CommandRebuilderTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory(prefix="wallet-rebuild-")
        self.artifact = Path(self._temp_dir.name) / "build" / "index.js"

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def _script(self, body: str) -> list[str]:
        return [sys.executable, "-c", body]

    async def test_successful_build_produces_artifact(self) -> None:
        body = (
            "import pathlib, sys\n"
            f"p = pathlib.Path({str(self.artifact)!r})\n"
            "p.parent.mkdir(parents=True, exist_ok=True)\n"
            "p.write_text('// built')\n"
            "print('build ok')\n"
        )
        result = await CommandRebuilder(self._script(body), timeout_seconds=10)(self.artifact)

        self.assertTrue(result.success)
        self.assertTrue(result.server_exists)
        payload = result.to_dict()
        self.assertEqual(payload["buildOutput"].strip(), "build ok")
        self.assertIsNone(payload["buildError"])
        self.assertEqual(payload["serverPath"], str(self.artifact))
        self.assertIsNone(payload["error"])

    async def test_non_zero_exit_is_reported(self) -> None:
        body = "import sys\nsys.stderr.write('tsc: error')\nsys.exit(2)\n"
        result = await CommandRebuilder(self._script(body), timeout_seconds=10)(self.artifact)

        self.assertFalse(result.success)
        self.assertEqual(result.error, "Build command exited with status 2")
        self.assertEqual(result.to_dict()["buildError"], "tsc: error")

    async def test_build_without_artifact_is_a_failure(self) -> None:
        result = await CommandRebuilder(self._script("print('nothing')"), timeout_seconds=10)(self.artifact)
        self.assertFalse(result.success)
        self.assertFalse(result.server_exists)
        self.assertEqual(result.error, "Build completed but index.js file not found")

    async def test_timeout_kills_build(self) -> None:
        body = "import time\ntime.sleep(30)\n"
        result = await CommandRebuilder(self._script(body), timeout_seconds=0.2)(self.artifact)
        self.assertFalse(result.success)
        self.assertIn("timed out", result.error or "")

    async def test_unstartable_command_is_reported(self) -> None:
        result = await CommandRebuilder(["/nonexistent/build-tool"])(self.artifact)
        self.assertFalse(result.success)
        self.assertIn("failed to start", result.error or "")

    def test_empty_command_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            CommandRebuilder([])


if __name__ == "__main__":
    unittest.main()

import io
import json
import logging
import sys
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock
from unittest.mock import MagicMock

import requests

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from csalt.cli import main
from csalt.core.credentials import CredentialStore
from csalt.core.models import Identity

SERVER = "https://api.example.org"


def make_response(status: int, body: object = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(body).encode("utf-8") if body is not None else b""
    response.encoding = "utf-8"
    return response


class FakeServer:
    """Answers the three API endpoints for user alice."""

    def __init__(self, password: str = "secret") -> None:
        self.password = password
        self.calls: list[tuple[str, str, dict]] = []

    def __call__(self, method: str, url: str, **kwargs: object) -> requests.Response:
        self.calls.append((method, url, kwargs))
        headers = kwargs.get("headers") or {}
        if url == f"{SERVER}/authenticate_user":
            if kwargs["json"] != {"username": "alice", "password": self.password}:
                return make_response(401, {"messages": ["Wrong password"]})
            return make_response(200, {"token": "JWT session-token"})
        if url == f"{SERVER}/token":
            if headers.get("Authorization") != "JWT session-token":
                return make_response(401)
            return make_response(200, {"token": "device-read-token"})
        if url == f"{SERVER}/api/v1/devices/query":
            if headers.get("Authorization") not in ("JWT session-token", "JWT device-read-token"):
                return make_response(401)
            return make_response(
                200,
                {
                    "devices": [
                        {"groupname": "group1", "devicename": "alpha", "saltId": 7},
                        {"groupname": "gp", "devicename": "group2", "saltId": 42},
                    ],
                    "statusCode": 200,
                    "messages": ["Completed query."],
                },
            )
        return make_response(404, {"messages": ["not found"]})


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = TemporaryDirectory()
        self.home = Path(self._tmpdir.name)
        self._env = mock.patch.dict("os.environ", {"CSALT_HOME": str(self.home)})
        self._env.start()
        self.store = CredentialStore(self.home)
        self.server = FakeServer()
        self._http = mock.patch.object(requests.Session, "request", autospec=True)
        request = self._http.start()
        request.side_effect = lambda _session, method, url, **kwargs: self.server(method, url, **kwargs)
        self.runner = MagicMock(return_value=0)

    def tearDown(self) -> None:
        self._http.stop()
        self._env.stop()
        logging.getLogger().handlers.clear()
        self._tmpdir.cleanup()

    def _main(self, argv: list[str], passwords: list | None = None, answers: list | None = None) -> int:
        return main(
            argv,
            prompt=MagicMock(side_effect=answers or []),
            prompt_password=MagicMock(side_effect=passwords or []),
            runner=self.runner,
        )

    def test_first_run_resolves_devices_and_caches_token(self) -> None:
        self.store.write_identity(Identity(server_url=SERVER, user_name="alice"))

        code = self._main(["group1 gp:group2", "test.ping"], passwords=["secret"])

        self.assertEqual(0, code)
        self.runner.assert_called_once_with(["sudo", "salt", "-L", "pi-7,pi-42", "test.ping"])
        token = self.store.read_token("alice")
        self.assertTrue(token)
        self.assertEqual("JWT device-read-token", token)

        _, _, query_kwargs = self.server.calls[-1]
        self.assertEqual(["group1"], json.loads(query_kwargs["params"]["groups"]))
        self.assertEqual(
            [{"groupname": "gp", "devicename": "group2"}], json.loads(query_kwargs["params"]["devices"])
        )

    def test_cached_token_is_reused_without_prompt(self) -> None:
        self.store.write_identity(Identity(server_url=SERVER, user_name="alice"))
        self.store.write_token("alice", "JWT device-read-token")

        code = self._main(["group1", "test.ping"])

        self.assertEqual(0, code)
        self.assertEqual(1, len(self.server.calls))
        self.runner.assert_called_once()

    def test_expired_token_reauthenticates_once(self) -> None:
        self.store.write_identity(Identity(server_url=SERVER, user_name="alice"))
        self.store.write_token("alice", "JWT expired")

        code = self._main(["group1", "test.ping"], passwords=["secret"])

        self.assertEqual(0, code)
        urls = [url for _, url, _ in self.server.calls]
        self.assertEqual(2, urls.count(f"{SERVER}/api/v1/devices/query"))
        self.assertEqual(1, urls.count(f"{SERVER}/authenticate_user"))
        self.assertEqual("JWT device-read-token", self.store.read_token("alice"))

    def test_three_wrong_passwords_fail(self) -> None:
        self.store.write_identity(Identity(server_url=SERVER, user_name="alice"))

        code = self._main(["group1", "test.ping"], passwords=["a", "b", "c"])

        self.assertEqual(1, code)
        self.runner.assert_not_called()

    def test_missing_identity_is_prompted_and_saved(self) -> None:
        code = self._main(
            ["group1", "test.ping"], passwords=["secret"], answers=[SERVER, "alice"]
        )

        self.assertEqual(0, code)
        self.assertEqual(Identity(server_url=SERVER, user_name="alice"), self.store.read_identity())

    def test_closed_stdin_at_password_prompt_fails_cleanly(self) -> None:
        self.store.write_identity(Identity(server_url=SERVER, user_name="alice"))

        code = self._main(["group1", "test.ping"], passwords=[EOFError()])

        self.assertEqual(1, code)
        self.runner.assert_not_called()
        self.assertEqual("", self.store.read_token("alice"))

    def test_closed_stdin_at_identity_prompt_fails_cleanly(self) -> None:
        code = self._main(["group1", "test.ping"], answers=[EOFError()])

        self.assertEqual(1, code)
        self.runner.assert_not_called()
        self.assertFalse(self.store.identity_path.exists())

    def test_unreadable_local_settings_are_reported(self) -> None:
        (self.home / "csalt-local.yml").write_text("api: [unclosed\n", encoding="utf-8")

        with mock.patch("sys.stderr", new_callable=io.StringIO) as stderr:
            code = self._main(["", "*", "test.ping"])

        self.assertEqual(0, code)
        self.assertIn("csalt-local.yml", stderr.getvalue())
        self.assertIn("WARNING", stderr.getvalue())
        self.runner.assert_called_once_with(["sudo", "salt", "*", "test.ping"])

    def test_no_devices_found_fails(self) -> None:
        self.store.write_identity(Identity(server_url=SERVER, user_name="alice"))
        self.store.write_token("alice", "JWT device-read-token")
        self.server = MagicMock(return_value=make_response(200, {"devices": []}))

        code = self._main(["group1", "test.ping"])

        self.assertEqual(1, code)
        self.runner.assert_not_called()

    def test_commands_without_devices_pass_through(self) -> None:
        code = self._main(["", "*", "test.ping"])

        self.assertEqual(0, code)
        self.runner.assert_called_once_with(["sudo", "salt", "*", "test.ping"])

    def test_raw_argument_without_command_passes_through(self) -> None:
        code = self._main(["* test.ping"])

        self.assertEqual(0, code)
        self.runner.assert_called_once_with(["sudo", "salt", "* test.ping"])

    def test_missing_command_is_usage_error(self) -> None:
        with self.assertRaises(SystemExit) as ctx:
            self._main([])
        self.assertEqual(2, ctx.exception.code)

    def test_device_without_group_is_usage_error(self) -> None:
        with self.assertRaises(SystemExit) as ctx:
            self._main([":device", "test.ping"])
        self.assertEqual(2, ctx.exception.code)


if __name__ == "__main__":
    unittest.main()

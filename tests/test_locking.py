import sys
import time
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from csalt.core.locking import LockError, LockGuard, lock_path_for


class LockGuardTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = TemporaryDirectory()
        self.lock_path = lock_path_for(Path(self._tmpdir.name) / ".cacophony-token")

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_lock_path_is_sibling_with_lock_suffix(self) -> None:
        self.assertEqual(".cacophony-token.lock", self.lock_path.name)
        self.assertEqual(Path(self._tmpdir.name), self.lock_path.parent)

    def test_shared_holders_coexist(self) -> None:
        first = LockGuard(self.lock_path)
        second = LockGuard(self.lock_path)
        try:
            self.assertTrue(first.acquire_shared(timeout=0.5))
            self.assertTrue(second.acquire_shared(timeout=0.5))
        finally:
            first.release()
            second.release()

    def test_exclusive_holder_blocks_shared_until_timeout(self) -> None:
        holder = LockGuard(self.lock_path)
        waiter = LockGuard(self.lock_path, retry_delay=0.05)
        holder.acquire_exclusive()
        try:
            started = time.monotonic()
            with self.assertRaises(LockError):
                waiter.acquire_shared(timeout=0.3)
            elapsed = time.monotonic() - started
        finally:
            holder.release()

        self.assertGreaterEqual(elapsed, 0.25)
        self.assertLess(elapsed, 3.0)
        self.assertFalse(waiter.locked)

    def test_exclusive_holder_blocks_exclusive(self) -> None:
        holder = LockGuard(self.lock_path)
        waiter = LockGuard(self.lock_path, retry_delay=0.05)
        holder.acquire_exclusive()
        try:
            with self.assertRaises(LockError):
                waiter.acquire_exclusive(timeout=0.2)
        finally:
            holder.release()

        self.assertTrue(waiter.acquire_exclusive(timeout=0.2))
        waiter.release()

    def test_shared_holder_blocks_exclusive(self) -> None:
        reader = LockGuard(self.lock_path)
        writer = LockGuard(self.lock_path, retry_delay=0.05)
        with reader.shared():
            with self.assertRaises(LockError):
                writer.acquire_exclusive(timeout=0.2)

    def test_release_is_idempotent_and_safe_without_lock(self) -> None:
        guard = LockGuard(self.lock_path)
        guard.release()
        guard.acquire_exclusive()
        guard.release()
        guard.release()
        self.assertFalse(guard.locked)

    def test_context_manager_releases_on_error(self) -> None:
        guard = LockGuard(self.lock_path)
        with self.assertRaises(RuntimeError):
            with guard.exclusive():
                raise RuntimeError("boom")

        self.assertFalse(guard.locked)
        other = LockGuard(self.lock_path)
        self.assertTrue(other.acquire_exclusive(timeout=0.2))
        other.release()

    def test_lock_file_is_kept_after_release(self) -> None:
        guard = LockGuard(self.lock_path)
        with guard.shared():
            pass
        self.assertTrue(self.lock_path.exists())


if __name__ == "__main__":
    unittest.main()

import unittest
from unittest import mock

from forma.batch import CancellationToken, chunked, run_batched
from forma.errors import BatchConfigError, RemoteOperationError


class BatchEngineTests(unittest.IsolatedAsyncioTestCase):
    async def test_one_failure_does_not_stop_siblings_or_later_chunks(self) -> None:
        calls: list[int] = []

        async def operation(target: int) -> None:
            calls.append(target)
            if target == 7:
                raise RemoteOperationError("boom")

        progress: list[tuple[int, int]] = []
        sleep = mock.AsyncMock()
        outcome = await run_batched(
            list(range(1, 13)),
            operation,
            batch_size=10,
            inter_batch_delay_ms=1000,
            on_progress=lambda done, total: progress.append((done, total)),
            sleep=sleep,
        )

        self.assertEqual(sorted(calls), list(range(1, 13)))
        self.assertEqual(len(outcome.succeeded), 11)
        self.assertEqual(outcome.failed_targets, [7])
        self.assertEqual(outcome.failed[0].message, "boom")
        self.assertEqual(outcome.attempted, 12)
        self.assertEqual(progress, [(10, 12), (12, 12)])
        sleep.assert_awaited_once_with(1.0)

    async def test_empty_targets(self) -> None:
        operation = mock.AsyncMock()
        sleep = mock.AsyncMock()
        progress = mock.Mock()
        outcome = await run_batched([], operation, 5, 500, progress, sleep=sleep)
        self.assertEqual(outcome.total, 0)
        self.assertEqual(outcome.attempted, 0)
        operation.assert_not_awaited()
        sleep.assert_not_awaited()
        progress.assert_not_called()

    async def test_invalid_configuration(self) -> None:
        operation = mock.AsyncMock()
        with self.assertRaises(BatchConfigError):
            await run_batched([1], operation, 0, 0)
        with self.assertRaises(BatchConfigError):
            await run_batched([1], operation, 1, -1)
        operation.assert_not_awaited()

    async def test_zero_delay_never_sleeps(self) -> None:
        sleep = mock.AsyncMock()
        outcome = await run_batched([1, 2, 3], mock.AsyncMock(), 1, 0, sleep=sleep)
        self.assertEqual(outcome.succeeded, {1, 2, 3})
        sleep.assert_not_awaited()

    async def test_key_maps_succeeded_identifiers(self) -> None:
        outcome = await run_batched(
            [{"id": "a"}, {"id": "b"}],
            mock.AsyncMock(),
            5,
            0,
            key=lambda target: target["id"],
        )
        self.assertEqual(outcome.succeeded, {"a", "b"})

    async def test_cancellation_between_chunks(self) -> None:
        token = CancellationToken()

        async def operation(target: int) -> None:
            if target == 2:
                token.cancel()

        sleep = mock.AsyncMock()
        outcome = await run_batched([1, 2, 3, 4, 5], operation, 2, 100, cancel_token=token, sleep=sleep)
        self.assertTrue(outcome.cancelled)
        self.assertEqual(outcome.attempted, 2)
        self.assertEqual(outcome.succeeded, {1, 2})
        sleep.assert_not_awaited()


class ChunkedTests(unittest.TestCase):
    def test_chunked(self) -> None:
        self.assertEqual(chunked([1, 2, 3, 4, 5], 2), [[1, 2], [3, 4], [5]])


if __name__ == "__main__":
    unittest.main()

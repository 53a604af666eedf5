import asyncio
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from chatgpt_webui.jobs import JobScheduler, should_run_in_background
from chatgpt_webui.models import AskRequest, AskResult, JobState
from chatgpt_webui.tools.errors import FatalUiError, JobNotFoundError


class ManualClock:
    def __init__(self) -> None:
        self.now = 1_000

    def __call__(self) -> int:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class TestJobScheduler(unittest.IsolatedAsyncioTestCase):
    async def test_submit_returns_distinct_ids_and_results(self) -> None:
        async def runner(request: AskRequest) -> AskResult:
            return AskResult(text=request.prompt.upper())

        scheduler = JobScheduler(runner)
        first = scheduler.submit(AskRequest(prompt="a"))
        second = scheduler.submit(AskRequest(prompt="b"))
        self.assertNotEqual(first, second)

        await scheduler.drain()
        self.assertEqual(scheduler.status(first).state, JobState.SUCCEEDED)
        self.assertEqual(scheduler.status(second).result.text, "B")

    async def test_submit_does_not_wait_for_work(self) -> None:
        release = asyncio.Event()

        async def runner(request: AskRequest) -> AskResult:
            await release.wait()
            return AskResult(text="done")

        scheduler = JobScheduler(runner)
        job_id = scheduler.submit(AskRequest(prompt="slow"))
        self.assertEqual(scheduler.status(job_id).state, JobState.QUEUED)

        await asyncio.sleep(0)
        job = scheduler.status(job_id)
        self.assertEqual(job.state, JobState.RUNNING)
        self.assertIsNotNone(job.started_at)

        release.set()
        await scheduler.drain()
        self.assertEqual(scheduler.status(job_id).state, JobState.SUCCEEDED)
        self.assertIsNotNone(scheduler.status(job_id).finished_at)

    async def test_failure_keeps_error_kind(self) -> None:
        async def runner(request: AskRequest) -> AskResult:
            raise FatalUiError("browser_ui_error_session_expired", kind="ui_error_session_expired")

        scheduler = JobScheduler(runner)
        job_id = scheduler.submit(AskRequest(prompt="x"))
        await scheduler.drain()

        job = scheduler.status(job_id)
        self.assertEqual(job.state, JobState.FAILED)
        self.assertEqual(job.error, "browser_ui_error_session_expired")
        self.assertEqual(job.error_kind, "ui_error_session_expired")
        self.assertIsNone(job.result)

    async def test_unknown_job(self) -> None:
        async def runner(request: AskRequest) -> AskResult:
            return AskResult(text="")

        scheduler = JobScheduler(runner)
        with self.assertRaises(JobNotFoundError) as ctx:
            scheduler.status("missing")
        self.assertEqual(ctx.exception.kind, "job_not_found")
        self.assertIn("ask_job_not_found", str(ctx.exception))

    async def test_ttl_expiry(self) -> None:
        clock = ManualClock()

        async def runner(request: AskRequest) -> AskResult:
            return AskResult(text="ok")

        scheduler = JobScheduler(runner, ttl_ms=1000, clock=clock)
        job_id = scheduler.submit(AskRequest(prompt="x"))
        await scheduler.drain()

        clock.now += 1000
        self.assertEqual(scheduler.status(job_id).state, JobState.SUCCEEDED)

        clock.now += 5000
        with self.assertRaises(JobNotFoundError):
            scheduler.status(job_id)
        self.assertNotIn(job_id, scheduler)

    async def test_await_until_does_not_resolve_expired_job(self) -> None:
        clock = ManualClock()

        async def runner(request: AskRequest) -> AskResult:
            return AskResult(text="ok")

        scheduler = JobScheduler(runner, ttl_ms=1000, clock=clock, sleep=clock.sleep)
        job_id = scheduler.submit(AskRequest(prompt="x"))
        await scheduler.drain()

        clock.now += 1001
        with self.assertRaises(JobNotFoundError):
            await scheduler.await_until(job_id, 5000)

    async def test_cap_evicts_oldest_finished_job(self) -> None:
        clock = ManualClock()

        async def runner(request: AskRequest) -> AskResult:
            return AskResult(text=request.prompt)

        scheduler = JobScheduler(runner, max_jobs=2, clock=clock)
        ids = []
        for prompt in ("one", "two", "three"):
            ids.append(scheduler.submit(AskRequest(prompt=prompt)))
            await scheduler.drain()
            clock.now += 10

        self.assertEqual(len(scheduler), 2)
        self.assertNotIn(ids[0], scheduler)
        self.assertIn(ids[1], scheduler)
        self.assertIn(ids[2], scheduler)

    async def test_cap_never_evicts_running_jobs(self) -> None:
        release = asyncio.Event()

        async def runner(request: AskRequest) -> AskResult:
            await release.wait()
            return AskResult(text="ok")

        scheduler = JobScheduler(runner, max_jobs=1)
        first = scheduler.submit(AskRequest(prompt="a"))
        second = scheduler.submit(AskRequest(prompt="b"))
        await asyncio.sleep(0)
        self.assertEqual(len(scheduler), 2)

        release.set()
        await scheduler.drain()
        self.assertEqual(len(scheduler), 1)
        self.assertNotIn(first, scheduler)
        self.assertIn(second, scheduler)

    async def test_await_until_returns_current_state_on_timeout(self) -> None:
        clock = ManualClock()
        release = asyncio.Event()

        async def runner(request: AskRequest) -> AskResult:
            await release.wait()
            return AskResult(text="late")

        scheduler = JobScheduler(runner, clock=clock, sleep=clock.sleep)
        job_id = scheduler.submit(AskRequest(prompt="x"))
        await asyncio.sleep(0)

        job = await scheduler.await_until(job_id, 5000, poll_interval_ms=2000)
        self.assertEqual(job.state, JobState.RUNNING)
        self.assertGreaterEqual(clock.now - 1_000, 5000)

        release.set()
        await scheduler.drain()
        job = await scheduler.await_until(job_id, 5000)
        self.assertEqual(job.result.text, "late")

    async def test_ids_are_unique_even_if_factory_repeats(self) -> None:
        values = iter(["dup", "dup", "fresh"])

        async def runner(request: AskRequest) -> AskResult:
            return AskResult(text="")

        scheduler = JobScheduler(runner, id_factory=lambda: next(values))
        self.assertEqual(scheduler.submit(AskRequest(prompt="a")), "dup")
        self.assertEqual(scheduler.submit(AskRequest(prompt="b")), "fresh")
        await scheduler.drain()


class TestBackgroundRouting(unittest.TestCase):
    def test_long_running_shapes(self) -> None:
        self.assertTrue(should_run_in_background(AskRequest(prompt="x", deep_research=True)))
        self.assertTrue(should_run_in_background(AskRequest(prompt="x", deep_research_site_mode="search_web")))
        self.assertTrue(should_run_in_background(AskRequest(prompt="x", create_image=True)))
        self.assertTrue(should_run_in_background(AskRequest(prompt="x", model_mode="pro")))
        self.assertTrue(should_run_in_background(AskRequest(prompt="x", model="gpt-5-1-thinking")))
        self.assertTrue(should_run_in_background(AskRequest(prompt="x", wait_timeout_ms=5 * 60 * 1000 + 1)))

    def test_short_shapes(self) -> None:
        self.assertFalse(should_run_in_background(AskRequest(prompt="x")))
        self.assertFalse(should_run_in_background(AskRequest(prompt="x", model_mode="instant")))
        self.assertFalse(should_run_in_background(AskRequest(prompt="x", wait_timeout_ms=5 * 60 * 1000)))


if __name__ == "__main__":
    unittest.main()

import io
import unittest
from contextlib import redirect_stdout
from unittest.mock import AsyncMock, MagicMock, patch

from reelforge import cli
from reelforge.database import make_memory_engine
from reelforge.events import EventManager
from reelforge.job_utils import active_jobs, broadcast_status, track_job
from reelforge.pipeline import Pipeline
from reelforge.testing import add_clip, add_keyframe, run, seed_project


class TestPipeline(unittest.TestCase):
    def setUp(self):
        self.engine = make_memory_engine()
        self.pipeline = Pipeline(engine=self.engine, media=MagicMock(), llm=MagicMock())

    def test_startup_loads_bundled_workflows(self):
        run(self.pipeline.startup())
        self.assertEqual(self.pipeline.adapter.get_workflow("sdxl_keyframe").type, "text_to_image")

    def test_orphaned_pending_artifacts_failed(self):
        _, _, (shot,) = seed_project(self.engine)
        orphan = add_keyframe(self.engine, shot.id, status="pending", image_path=None)
        submitted = add_clip(self.engine, shot.id, status="pending", job_id="job-1", video_path=None)

        self.assertEqual(self.pipeline.fail_orphaned_artifacts(), 1)
        self.assertEqual(self.pipeline.keyframes.get(orphan.id).status, "failed")
        self.assertEqual(self.pipeline.clips.get(submitted.id).status, "pending")

    def test_shutdown_reports_tracked_jobs(self):
        track_job("job-late", "keyframe", "kf-1")
        self.addCleanup(active_jobs.pop, "job-late", None)
        with self.assertLogs("reelforge.pipeline", "INFO") as logs:
            run(self.pipeline.shutdown())
        self.assertTrue(any("1 backend jobs still in flight: job-late" in line for line in logs.output))

    def test_refresh_actions_wired(self):
        self.assertEqual(set(self.pipeline.refresher.actions), {"scene", "shot", "keyframe", "clip"})

    def test_shot_refresh_uses_regenerate(self):
        _, _, (shot,) = seed_project(self.engine)
        keyframe = add_keyframe(self.engine, shot.id)
        self.pipeline.refresher.actions["keyframe"] = AsyncMock()
        with patch("reelforge.services.batch_refresh.event_manager.broadcast", new_callable=AsyncMock):
            result = run(self.pipeline.refresher.batch_refresh("shot", shot.id))
        self.assertEqual(result.summary.completed, 1)
        self.pipeline.refresher.actions["keyframe"].assert_awaited_once_with(keyframe.id)


class TestCli(unittest.TestCase):
    def setUp(self):
        self.engine = make_memory_engine()
        self.pipeline = Pipeline(engine=self.engine, media=MagicMock(), llm=MagicMock())
        self.project, self.scene, _ = seed_project(self.engine, shot_count=0)

    def _main(self, *argv):
        out = io.StringIO()
        with patch("reelforge.cli.setup_logging"), redirect_stdout(out):
            code = cli.main(list(argv), pipeline=self.pipeline)
        return code, out.getvalue()

    def test_check_chain(self):
        self.pipeline.shots.create_shot(self.project.id, self.scene.id, "S01-01", 3.0, use_last_frame_as_first=True)
        code, output = self._main("check-chain", self.project.id)
        self.assertEqual(code, 1)
        self.assertIn("S01-01", output)

    def test_impact_unknown_type(self):
        code, _ = self._main("impact", "storyboard", "x")
        self.assertEqual(code, 1)

    def test_no_command(self):
        with redirect_stdout(io.StringIO()):
            self.assertEqual(cli.main([], pipeline=self.pipeline), 2)


class TestEvents(unittest.TestCase):
    def test_full_queue_drops_oldest(self):
        manager = EventManager()

        async def scenario():
            queue = manager.subscribe()
            for i in range(queue.maxsize + 5):
                await manager.broadcast("keyframe_status", {"n": i})
            return queue

        queue = run(scenario())
        self.assertEqual(queue.qsize(), queue.maxsize)
        self.assertIn('"n": 5', queue.get_nowait()["data"])

    def test_listen_skips_stale_and_unsubscribes(self):
        manager = EventManager()

        async def scenario():
            queue = manager.subscribe()
            queue.put_nowait({"event": "clip_status", "data": "{}", "_timestamp": 1.0})
            await manager.broadcast("keyframe_status", {"keyframe_id": "k1"})
            stream = manager.listen(queue, timeout=0.1)
            event = await stream.__anext__()
            await stream.aclose()
            return event

        event = run(scenario())
        self.assertEqual(event["event"], "keyframe_status")
        self.assertNotIn("_timestamp", event)
        self.assertEqual(manager.clients, [])

    def test_terminal_status_untracks_job(self):
        track_job("job-x", "clip", "clip-1")
        with patch("reelforge.job_utils.event_manager.broadcast", new_callable=AsyncMock) as mock_broadcast:
            run(broadcast_status("clip", "clip-1", "completed", job_id="job-x", output_path="output/a.mp4"))
        self.assertNotIn("job-x", active_jobs)
        event, data = mock_broadcast.await_args.args
        self.assertEqual(event, "clip_status")
        self.assertEqual(data["clip_id"], "clip-1")
        self.assertEqual(data["output_path"], "output/a.mp4")


if __name__ == "__main__":
    unittest.main()

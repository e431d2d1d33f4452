import os
import shutil
import asyncio
import tempfile
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from reelforge import config
from reelforge.database import make_memory_engine
from reelforge.errors import BackendError, ValidationError
from reelforge.managers.generation_adapter import GenerationAdapter
from reelforge.managers.workflow_manager import WorkflowManager
from reelforge.schemas import ClipGenerationRequest, ContinuityReference
from reelforge.tasks.clips import ClipGenerator, generate_prompt
from reelforge.testing import (
    add_clip, add_keyframe, clip_workflow, keyframe_workflow, memory_engine_with_workflows, run, seed_project,
)


class TestClipGeneration(unittest.TestCase):
    def setUp(self):
        self.engine = memory_engine_with_workflows(
            keyframe_workflow(),
            clip_workflow("test_clip"),
            clip_workflow("test_t2v", type="text_to_video", fps=12),
        )
        _, _, (self.first, self.second) = seed_project(self.engine, shot_count=2, chained=True)
        self.adapter = GenerationAdapter(engine=self.engine)
        self.adapter.submit = AsyncMock(return_value="job-1")
        self.continuity = MagicMock()
        self.continuity.resolve_reference = AsyncMock(return_value=None)
        self.generator = ClipGenerator(engine=self.engine, adapter=self.adapter, continuity=self.continuity)

    def _generate(self, request):
        async def scenario():
            clip = await self.generator.generate_clip(request)
            await self.generator.submission_task(clip.id)
            return clip, self.generator.get(clip.id)
        return run(scenario())

    def test_image_to_video_requires_keyframe(self):
        request = ClipGenerationRequest(shot_id=self.first.id, input_mode="image_to_video", workflow_name="test_clip")
        with self.assertRaises(ValidationError):
            run(self.generator.generate_clip(request))
        self.adapter.submit.assert_not_awaited()
        self.assertEqual(self.generator.list_artifacts(self.first.id), [])

    def test_invalid_input_mode(self):
        request = ClipGenerationRequest(shot_id=self.first.id, input_mode="video_to_video", workflow_name="test_clip")
        with self.assertRaises(ValidationError):
            run(self.generator.generate_clip(request))

    def test_keyframe_must_be_completed_and_same_shot(self):
        pending = add_keyframe(self.engine, self.first.id, status="processing", image_path=None)
        foreign = add_keyframe(self.engine, self.second.id)
        for keyframe in (pending, foreign):
            request = ClipGenerationRequest(shot_id=self.first.id, input_mode="image_to_video",
                                            workflow_name="test_clip", keyframe_id=keyframe.id)
            with self.assertRaises(ValidationError):
                run(self.generator.generate_clip(request))
        self.adapter.submit.assert_not_awaited()

    def test_returns_pending_then_submits_in_background(self):
        keyframe = add_keyframe(self.engine, self.first.id, image_path="/out/kf.png")
        request = ClipGenerationRequest(shot_id=self.first.id, input_mode="image_to_video",
                                        workflow_name="test_clip", keyframe_id=keyframe.id)

        returned, stored = self._generate(request)

        self.assertEqual(returned.status, "pending")
        self.assertEqual(stored.status, "processing")
        self.assertEqual(stored.job_id, "job-1")
        # demo fallbacks
        self.assertEqual((stored.duration, stored.fps, stored.width, stored.height), (2.0, 8, 512, 512))
        self.assertEqual((stored.steps, stored.guidance, stored.cfg), (10, 2.0, 7.0))
        workflow_name, params = self.adapter.submit.await_args.args
        self.assertEqual(workflow_name, "test_clip")
        self.assertEqual(params["keyframe_image"], "/out/kf.png")
        self.assertEqual(params["num_frames"], 16)
        self.assertNotIn("first_frame_reference", params)

    def test_workflow_default_beats_mode_fallback(self):
        request = ClipGenerationRequest(shot_id=self.first.id, input_mode="text_to_video",
                                        workflow_name="test_t2v", mode="production")
        _, stored = self._generate(request)
        self.assertEqual(stored.fps, 12)
        self.assertEqual(stored.duration, 5.0)
        self.assertEqual(stored.width, 1024)
        self.assertEqual(stored.prompt, "a lighthouse keeper, in rocky coast")

    def test_background_failure_marks_clip_failed(self):
        self.adapter.submit = AsyncMock(side_effect=BackendError("backend down"))
        request = ClipGenerationRequest(shot_id=self.first.id, input_mode="text_to_video", workflow_name="test_t2v")

        returned, stored = self._generate(request)

        self.assertEqual(returned.status, "pending")
        self.assertEqual(stored.status, "failed")
        self.assertIn("backend down", stored.error_message)

    def test_versions_count_up_per_shot(self):
        request = ClipGenerationRequest(shot_id=self.first.id, input_mode="text_to_video", workflow_name="test_t2v")
        self._generate(request)
        _, stored = self._generate(request)
        self.assertEqual(stored.version, 2)

    def test_chained_shot_starts_from_previous_last_frame(self):
        self.continuity.resolve_reference = AsyncMock(return_value=ContinuityReference(
            reference_image="/frames/last_frame_a.png", strength=1.0, source_shot_id=self.first.id,
            source_artifact_id="clip-a", frame_number=119))
        request = ClipGenerationRequest(shot_id=self.second.id, input_mode="text_to_video", workflow_name="test_t2v")

        with self.assertLogs("reelforge.tasks.clips", "WARNING") as logs:
            _, stored = self._generate(request)
        # test_t2v declares no first_frame_reference
        self.assertIn("without continuity", logs.output[0])

        self.assertTrue(stored.use_last_frame_reference)
        self.assertEqual(stored.reference_frame_path, "/frames/last_frame_a.png")
        self.assertEqual(stored.reference_frame_number, 119)
        params = self.adapter.submit.await_args.args[1]
        self.assertEqual(params["first_frame_reference"], "/frames/last_frame_a.png")
        self.assertEqual(params["first_frame_strength"], 1.0)
        self.continuity.resolve_reference.assert_awaited_once()

    def test_finished_submissions_are_released(self):
        request = ClipGenerationRequest(shot_id=self.first.id, input_mode="text_to_video", workflow_name="test_t2v")

        async def scenario():
            clips = [await self.generator.generate_clip(request) for _ in range(3)]
            await asyncio.gather(*self.generator.pending_submissions())
            # done callbacks run on the next loop iteration
            await asyncio.sleep(0)
            return clips

        clips = run(scenario())
        self.assertEqual(self.generator.pending_submissions(), [])
        self.assertEqual(self.generator._submissions, {})
        self.assertIsNone(self.generator.submission_task(clips[0].id))

    def test_invalid_mode(self):
        with self.assertRaises(ValidationError):
            self.generator.mode_defaults("test_t2v", "preview")

    def test_prompt_fallback(self):
        shot = MagicMock(environment=None, subject=None, action=None, camera_movement=None, lighting=None, style=None)
        self.assertEqual(generate_prompt(shot), "A cinematic video clip")


class TestClipOperations(unittest.TestCase):
    def setUp(self):
        self.engine = memory_engine_with_workflows(clip_workflow("test_clip"))
        _, _, (self.shot,) = seed_project(self.engine)
        self.adapter = GenerationAdapter(engine=self.engine)
        self.adapter.submit = AsyncMock(return_value="job-7")
        self.continuity = MagicMock()
        self.continuity.media.extract_frame_at = AsyncMock(side_effect=lambda video, ts, out: out)
        self.continuity.verify_continuity = AsyncMock(return_value="check")
        self.generator = ClipGenerator(engine=self.engine, adapter=self.adapter, continuity=self.continuity)

    def test_extract_frame_timestamp(self):
        clip = add_clip(self.engine, self.shot.id, fps=24, video_path="/out/clip.mp4")

        path = run(self.generator.extract_frame(clip.id, 48))

        video, timestamp, _ = self.continuity.media.extract_frame_at.await_args.args
        self.assertEqual(video, "/out/clip.mp4")
        self.assertAlmostEqual(timestamp, 2.0)
        self.assertTrue(path.endswith(f"{clip.id}_frame_48.png"))

    def test_extract_frame_without_video(self):
        clip = add_clip(self.engine, self.shot.id, status="processing", video_path=None)
        with self.assertRaises(ValidationError):
            run(self.generator.extract_frame(clip.id, 0))

    def test_regenerate_submits_before_returning(self):
        source = add_clip(self.engine, self.shot.id, version=2, seed=9, prompt="waves")

        clip = run(self.generator.regenerate(source.id))

        self.assertEqual(clip.version, 3)
        self.assertEqual(clip.status, "processing")
        self.assertEqual(clip.job_id, "job-7")
        self.assertEqual(self.adapter.submit.await_args.args[1]["seed"], 9)

    def test_verify_continuity_delegates(self):
        self.assertEqual(run(self.generator.verify_continuity("a", "b")), "check")
        self.continuity.verify_continuity.assert_awaited_once_with("a", "b")


class TestBundledClipWorkflow(unittest.TestCase):
    def setUp(self):
        self.engine = make_memory_engine()
        WorkflowManager(engine=self.engine).load_configs(config.WORKFLOWS_DIR)
        _, _, (self.first, self.second) = seed_project(self.engine, shot_count=2, chained=True)
        self.frames_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.frames_dir, True)
        self.last_frame = os.path.join(self.frames_dir, "last_frame_a.png")
        with open(self.last_frame, "wb") as f:
            f.write(b"png")

        self.continuity = MagicMock()
        self.continuity.resolve_reference = AsyncMock(return_value=ContinuityReference(
            reference_image=self.last_frame, strength=1.0, source_shot_id=self.first.id,
            source_artifact_id="clip-a", frame_number=119))
        self.generator = ClipGenerator(engine=self.engine, adapter=GenerationAdapter(engine=self.engine),
                                       continuity=self.continuity)

    @patch("reelforge.managers.generation_adapter.requests.request")
    def test_chained_shot_conditions_on_uploaded_last_frame(self, mock_request):
        upload = MagicMock(status_code=200)
        upload.json.return_value = {"name": "last_frame_a.png", "subfolder": "", "type": "input"}
        accepted = MagicMock(status_code=200)
        accepted.json.return_value = {"prompt_id": "job-5"}
        mock_request.side_effect = [upload, accepted]
        keyframe = add_keyframe(self.engine, self.second.id, image_path="output/kf.png")
        request = ClipGenerationRequest(shot_id=self.second.id, input_mode="image_to_video",
                                        workflow_name="svd_image_to_video", keyframe_id=keyframe.id)

        async def scenario():
            clip = await self.generator.generate_clip(request)
            await self.generator.submission_task(clip.id)
            return self.generator.get(clip.id)

        stored = run(scenario())

        self.assertEqual(stored.job_id, "job-5")
        graph = mock_request.call_args_list[1].kwargs["json"]["prompt"]
        self.assertEqual(graph["2"]["inputs"]["image"], "kf.png [output]")
        self.assertEqual(graph["7"]["inputs"]["image"], "last_frame_a.png")
        self.assertEqual(graph["3"]["inputs"]["init_image"], ["7", 0])


if __name__ == "__main__":
    unittest.main()

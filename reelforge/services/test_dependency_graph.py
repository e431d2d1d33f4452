import unittest
from unittest.mock import AsyncMock, patch

from sqlmodel import Session

from reelforge.database import make_memory_engine, Story
from reelforge.errors import NotFoundError, ValidationError
from reelforge.services.batch_refresh import BatchRefresher
from reelforge.services.dependency_graph import DependencyGraph
from reelforge.testing import add_clip, add_keyframe, run, seed_project


class TestDependencyGraph(unittest.TestCase):
    def setUp(self):
        self.engine = make_memory_engine()
        self.graph = DependencyGraph(engine=self.engine)
        self.project, self.scene, (self.shot,) = seed_project(self.engine)

    def test_impact_is_direct_plus_one_level(self):
        for version in (1, 2):
            keyframe = add_keyframe(self.engine, self.shot.id, version=version)
            add_clip(self.engine, self.shot.id, version=version, input_mode="image_to_video", keyframe_id=keyframe.id)

        impact = self.graph.check_impact("shot", self.shot.id)

        self.assertEqual([d.entity_type for d in impact.direct], ["keyframe", "keyframe"])
        self.assertEqual([d.entity_type for d in impact.indirect], ["clip", "clip"])
        self.assertEqual(impact.total_affected, 4)

    def test_impact_stops_after_two_levels(self):
        keyframe = add_keyframe(self.engine, self.shot.id)
        add_clip(self.engine, self.shot.id, input_mode="image_to_video", keyframe_id=keyframe.id)

        impact = self.graph.check_impact("scene", self.scene.id)

        self.assertEqual(len(impact.direct), 1)
        self.assertEqual(len(impact.indirect), 1)
        self.assertEqual(impact.total_affected, 2)
        # the full closure still reaches the clip
        self.assertEqual([d.entity_type for d in self.graph.walk_subtree("scene", self.scene.id)],
                         ["shot", "keyframe", "clip"])

    def test_text_to_video_clips_do_not_depend_on_keyframes(self):
        keyframe = add_keyframe(self.engine, self.shot.id)
        add_clip(self.engine, self.shot.id, input_mode="text_to_video", keyframe_id=keyframe.id)
        self.assertEqual(self.graph.get_dependents("keyframe", keyframe.id), [])

    def test_story_reaches_project_scenes(self):
        with Session(self.engine) as session:
            story = Story(project_id=self.project.id, hook="A storm")
            session.add(story)
            session.commit()
            session.refresh(story)

        dependents = self.graph.get_dependents("story", story.id)
        self.assertEqual([(d.entity_type, d.entity_id, d.entity_name) for d in dependents],
                         [("scene", self.scene.id, "Opening")])

    def test_leaf_types_have_no_dependents(self):
        clip = add_clip(self.engine, self.shot.id)
        self.assertEqual(self.graph.check_impact("clip", clip.id).total_affected, 0)

    def test_unknown_type_and_missing_root(self):
        with self.assertRaises(ValidationError):
            self.graph.get_dependents("storyboard", self.shot.id)
        with self.assertRaises(NotFoundError):
            self.graph.check_impact("shot", "missing")


class TestBatchRefresh(unittest.TestCase):
    def setUp(self):
        self.engine = make_memory_engine()
        self.graph = DependencyGraph(engine=self.engine)
        _, _, (self.shot,) = seed_project(self.engine)
        self.keyframes = [add_keyframe(self.engine, self.shot.id, version=v) for v in (1, 2, 3)]

    @patch("reelforge.services.batch_refresh.event_manager.broadcast", new_callable=AsyncMock)
    def test_failure_does_not_stop_siblings(self, mock_broadcast):
        failing_id = self.keyframes[1].id

        async def regenerate(keyframe_id):
            if keyframe_id == failing_id:
                raise RuntimeError("backend exploded")

        refresher = BatchRefresher(self.graph, actions={"keyframe": regenerate})
        result = run(refresher.batch_refresh("shot", self.shot.id))

        self.assertEqual((result.summary.total, result.summary.completed, result.summary.failed), (3, 2, 1))
        failed = [t for t in result.tasks if t.status == "failed"]
        self.assertEqual(failed[0].entity_id, failing_id)
        self.assertIn("backend exploded", failed[0].error)
        self.assertEqual(mock_broadcast.await_count, 3)

    @patch("reelforge.services.batch_refresh.event_manager.broadcast", new_callable=AsyncMock)
    def test_missing_action_counts_as_failure(self, _):
        result = run(BatchRefresher(self.graph).batch_refresh("shot", self.shot.id))
        self.assertEqual(result.summary.failed, 3)

    def test_plan_lists_subtree_in_order(self):
        plan = BatchRefresher(self.graph).plan("shot", self.shot.id)
        self.assertEqual([t.entity_id for t in plan], [k.id for k in self.keyframes])
        self.assertTrue(all(t.status == "pending" for t in plan))


if __name__ == "__main__":
    unittest.main()

import unittest
from unittest.mock import AsyncMock, MagicMock

from sqlmodel import Session

from reelforge.database import make_memory_engine, Scene, Shot
from reelforge.errors import NotFoundError, ValidationError
from reelforge.services.shot_service import ShotService
from reelforge.testing import add_clip, add_keyframe, run, seed_project


class TestShotService(unittest.TestCase):
    def setUp(self):
        self.engine = make_memory_engine()
        self.llm = MagicMock()
        self.service = ShotService(engine=self.engine, llm=self.llm)
        self.project, self.scene, _ = seed_project(self.engine, shot_count=0)

    def _shot(self, code, **fields):
        return self.service.create_shot(self.project.id, self.scene.id, code, 4.0, **fields)

    def test_create_assigns_sequence_and_links_neighbour(self):
        a = self._shot("S01-01")
        b = self._shot("S01-02", previous_shot_id=a.id, use_last_frame_as_first=True)

        self.assertEqual((a.sequence_number, b.sequence_number), (1, 2))
        self.assertEqual(self.service.get_shot(a.id).next_shot_id, b.id)
        self.assertEqual(b.previous_shot_id, a.id)
        self.assertTrue(b.use_last_frame_as_first)

    def test_create_validation(self):
        self._shot("S01-01")
        with self.assertRaises(ValidationError):
            self._shot("S01-01")
        with self.assertRaises(ValidationError):
            self._shot("  ")
        with self.assertRaises(ValidationError):
            self.service.create_shot(self.project.id, self.scene.id, "S01-09", 0)
        with self.assertRaises(ValidationError):
            self._shot("S01-03", shot_type="aerial")
        with self.assertRaises(NotFoundError):
            self.service.create_shot(self.project.id, "missing", "S01-04", 3.0)

    def test_scene_from_other_project_rejected(self):
        other_project, other_scene, _ = seed_project(self.engine, shot_count=0)
        with self.assertRaises(ValidationError):
            self.service.create_shot(self.project.id, other_scene.id, "S01-01", 3.0)

    def test_update_content_bumps_and_snapshots(self):
        shot = self._shot("S01-01", subject="keeper")

        updated = self.service.update_shot(shot.id, {"subject": "seagull"})
        self.assertEqual(updated.version, 2)
        versions = self.service.version_store.list_versions("shot", shot.id)
        self.assertEqual(len(versions), 1)
        self.assertEqual(versions[0].snapshot["subject"], "seagull")
        self.assertIn("subject", versions[0].change_summary)

        same = self.service.update_shot(shot.id, {"subject": "seagull", "status": "approved"})
        self.assertEqual(same.version, 2)
        self.assertEqual(same.status, "approved")
        self.assertEqual(len(self.service.version_store.list_versions("shot", shot.id)), 1)

    def test_update_rejects_link_fields(self):
        shot = self._shot("S01-01")
        with self.assertRaises(ValidationError):
            self.service.update_shot(shot.id, {"next_shot_id": "x"})

    def test_update_duplicate_code(self):
        self._shot("S01-01")
        b = self._shot("S01-02")
        with self.assertRaises(ValidationError):
            self.service.update_shot(b.id, {"shot_code": "S01-01"})

    def test_delete_relinks_and_removes_artifacts(self):
        a = self._shot("S01-01")
        b = self._shot("S01-02", previous_shot_id=a.id)
        c = self._shot("S01-03", previous_shot_id=b.id)
        add_keyframe(self.engine, b.id)
        add_clip(self.engine, b.id)

        self.service.delete_shot(b.id)

        self.assertEqual(self.service.get_shot(a.id).next_shot_id, c.id)
        self.assertEqual(self.service.get_shot(c.id).previous_shot_id, a.id)
        with self.assertRaises(NotFoundError):
            self.service.get_shot(b.id)
        self.assertTrue(self.service.validate_transition_chain(self.project.id).is_valid)

    def test_set_transition_moves_links(self):
        a = self._shot("S01-01")
        b = self._shot("S01-02", previous_shot_id=a.id)
        c = self._shot("S01-03")

        # c takes b's place after a
        self.service.set_transition(c.id, previous_shot_id=a.id, transition_type="dissolve")

        self.assertEqual(self.service.get_shot(a.id).next_shot_id, c.id)
        self.assertIsNone(self.service.get_shot(b.id).previous_shot_id)
        shot_c = self.service.get_shot(c.id)
        self.assertEqual(shot_c.previous_shot_id, a.id)
        self.assertEqual(shot_c.transition_type, "dissolve")
        self.assertTrue(self.service.validate_transition_chain(self.project.id).is_valid)

        self.service.set_transition(c.id, previous_shot_id=None)
        self.assertIsNone(self.service.get_shot(a.id).next_shot_id)

    def test_set_transition_to_self(self):
        a = self._shot("S01-01")
        with self.assertRaises(ValidationError):
            self.service.set_transition(a.id, next_shot_id=a.id)

    def test_chain_validation_reports_problems(self):
        a = self._shot("S01-01")
        b = self._shot("S01-02")
        c = self._shot("S01-03", use_last_frame_as_first=True)
        with Session(self.engine) as session:
            shot_a, shot_b = session.get(Shot, a.id), session.get(Shot, b.id)
            # a -> b -> a, with b's back-link missing
            shot_a.next_shot_id = b.id
            shot_b.next_shot_id = a.id
            shot_a.previous_shot_id = b.id
            session.add(shot_a)
            session.add(shot_b)
            session.commit()

        report = self.service.validate_transition_chain(self.project.id)

        self.assertFalse(report.is_valid)
        messages = [e.message for e in report.errors]
        self.assertTrue(any("does not link back" in m for m in messages))
        self.assertTrue(any("cycle" in m for m in messages))
        flagged = [e for e in report.errors if "no previous shot" in e.message]
        self.assertEqual([e.shot_code for e in flagged], [c.shot_code])

    def test_chain_validation_dangling_reference(self):
        a = self._shot("S01-01")
        with Session(self.engine) as session:
            shot = session.get(Shot, a.id)
            shot.next_shot_id = "deleted-shot"
            session.add(shot)
            session.commit()
        report = self.service.validate_transition_chain(self.project.id)
        self.assertEqual([e.message for e in report.errors], ["Next shot deleted-shot not found"])

    def test_reorder(self):
        a = self._shot("S01-01")
        b = self._shot("S01-02")
        shots = self.service.reorder_shots([b.id, a.id])
        self.assertEqual([s.shot_code for s in shots], ["S01-02", "S01-01"])

    def test_list_by_scene(self):
        with Session(self.engine) as session:
            scene2 = Scene(project_id=self.project.id, scene_number=2, title="Storm")
            session.add(scene2)
            session.commit()
            session.refresh(scene2)
        self._shot("S01-01")
        self.service.create_shot(self.project.id, scene2.id, "S02-01", 3.0)
        self.assertEqual([s.shot_code for s in self.service.list_shots(self.project.id, scene_id=scene2.id)],
                         ["S02-01"])
        self.assertEqual(len(self.service.list_shots(self.project.id)), 2)

    def test_refresh_optimized_prompt(self):
        shot = self._shot("S01-01", subject="keeper", lighting="golden hour")
        self.llm.optimize_prompt = AsyncMock(return_value="lighthouse keeper, golden hour, film grain")

        refreshed = run(self.service.refresh_optimized_prompt(shot.id))

        self.assertEqual(refreshed.optimized_prompt, "lighthouse keeper, golden hour, film grain")
        self.assertEqual(refreshed.version, 1)
        self.assertEqual(self.llm.optimize_prompt.await_args.kwargs["lighting"], "golden hour")

    def test_batch_style_update(self):
        a = self._shot("S01-01", style="noir")
        b = self._shot("S01-02", style="pastel", lighting="golden hour")

        shots = self.service.batch_update_style([a.id, b.id], {"style": " noir ", "lighting": "golden hour"})

        self.assertEqual([s.style for s in shots], ["noir", "noir"])
        self.assertEqual([s.lighting for s in shots], ["golden hour", "golden hour"])
        # a changed lighting only, b changed style only; both are new versions
        self.assertEqual([s.version for s in shots], [2, 2])
        history = self.service.version_store.list_versions("shot", b.id)
        self.assertEqual(history[0].change_summary, "Batch style update: lighting, style")

        unchanged = self.service.batch_update_style([a.id], {"style": "noir"})
        self.assertEqual(unchanged[0].version, 2)
        self.assertEqual(len(self.service.version_store.list_versions("shot", a.id)), 1)

    def test_batch_style_update_validation(self):
        a = self._shot("S01-01", style="noir")
        with self.assertRaises(ValidationError):
            self.service.batch_update_style([], {"style": "noir"})
        with self.assertRaises(ValidationError):
            self.service.batch_update_style([a.id], {"subject": "a cat"})
        with self.assertRaises(NotFoundError):
            self.service.batch_update_style([a.id, "missing"], {"style": "pastel"})
        # Nothing applied when one id is unknown
        self.assertEqual(self.service.get_shot(a.id).style, "noir")


if __name__ == "__main__":
    unittest.main()

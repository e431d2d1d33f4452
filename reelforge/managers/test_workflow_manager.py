import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock

from reelforge import config
from reelforge.database import make_memory_engine
from reelforge.errors import ValidationError, WorkflowNotFound
from reelforge.managers.workflow_manager import WorkflowManager
from reelforge.testing import keyframe_workflow


class TestWorkflowManager(unittest.TestCase):
    def setUp(self):
        self.engine = make_memory_engine()
        self.adapter = MagicMock()
        self.manager = WorkflowManager(engine=self.engine, adapter=self.adapter)
        self.workflows_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.workflows_dir, ignore_errors=True)

    def _write(self, filename, data):
        path = os.path.join(self.workflows_dir, filename)
        with open(path, "w") as f:
            f.write(data if isinstance(data, str) else json.dumps(data))
        return path

    def test_load_skips_invalid_files(self):
        self._write("good.json", keyframe_workflow("good").model_dump())
        bad_type = keyframe_workflow("bad").model_dump()
        bad_type["type"] = "image_to_audio"
        self._write("bad_type.json", bad_type)
        self._write("truncated.json", '{"name": "half"')
        self._write("notes.txt", "ignored")

        result = self.manager.load_configs(self.workflows_dir)

        self.assertEqual(result["loaded"], ["good"])
        self.assertEqual(sorted(result["failed"]), ["bad_type.json", "truncated.json"])
        self.assertEqual([w.name for w in self.manager.list_workflows()], ["good"])

    def test_select_parameter_requires_options(self):
        data = keyframe_workflow("sel").model_dump()
        data["parameters"].append({"name": "sampler", "display_name": "Sampler", "type": "select",
                                   "default_value": "euler", "node_id": "3", "field_path": "inputs.sampler_name"})
        path = self._write("sel.json", data)
        with self.assertRaises(ValidationError):
            self.manager.parse_file(path)

    def test_parameter_without_default_rejected(self):
        data = keyframe_workflow("nodefault").model_dump()
        data["parameters"][0]["default_value"] = None
        path = self._write("nodefault.json", data)
        with self.assertRaises(ValidationError):
            self.manager.parse_file(path)

    def test_register_upserts_and_invalidates_cache(self):
        self.manager.register(keyframe_workflow("kf"))
        updated = keyframe_workflow("kf")
        updated.display_name = "Keyframe v2"
        self.manager.register(updated)

        workflows = self.manager.list_workflows()
        self.assertEqual(len(workflows), 1)
        self.assertEqual(workflows[0].display_name, "Keyframe v2")
        self.adapter.invalidate.assert_called_with("kf")

    def test_set_active(self):
        self.manager.register(keyframe_workflow("kf"))
        self.manager.set_active("kf", False)
        self.assertEqual(self.manager.list_workflows(), [])
        self.assertEqual(len(self.manager.list_workflows(active_only=False)), 1)
        with self.assertRaises(WorkflowNotFound):
            self.manager.set_active("missing", True)

    def test_bundled_workflows_load(self):
        result = self.manager.load_configs(config.WORKFLOWS_DIR)
        self.assertEqual(result["failed"], [])
        self.assertIn("sdxl_keyframe", result["loaded"])
        self.assertEqual([w.name for w in self.manager.list_workflows(type="image_to_video")],
                         ["svd_image_to_video"])


if __name__ == "__main__":
    unittest.main()

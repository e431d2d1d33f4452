"""Fixtures shared by the test modules: an in-memory database seeded with a small project."""
import asyncio
from typing import List

from sqlmodel import Session

from reelforge.database import make_memory_engine, Project, Scene, Shot, Keyframe, Clip, COMPLETED
from reelforge.managers.workflow_manager import WorkflowManager
from reelforge.schemas import WorkflowDefinition


def run(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def keyframe_workflow(name: str = "test_keyframe") -> WorkflowDefinition:
    return WorkflowDefinition(
        name=name,
        display_name="Test Keyframe",
        type="text_to_image",
        workflow_json={
            "3": {"class_type": "KSampler", "inputs": {"seed": 0, "steps": 20, "cfg": 7.0}},
            "6": {"class_type": "CLIPTextEncode", "inputs": {"text": ""}},
        },
        parameters=[
            {"name": "prompt", "display_name": "Prompt", "type": "string", "default_value": "",
             "node_id": "6", "field_path": "inputs.text"},
            {"name": "seed", "display_name": "Seed", "type": "number", "default_value": 0,
             "node_id": "3", "field_path": "inputs.seed"},
            {"name": "steps", "display_name": "Steps", "type": "number", "default_value": 20,
             "node_id": "3", "field_path": "inputs.steps"},
        ],
    )


def clip_workflow(name: str = "test_clip", type: str = "image_to_video", fps: int = None) -> WorkflowDefinition:
    parameters = [
        {"name": "prompt", "display_name": "Prompt", "type": "string", "default_value": "",
         "node_id": "1", "field_path": "inputs.text"},
        {"name": "num_frames", "display_name": "Frames", "type": "number", "default_value": 16,
         "node_id": "1", "field_path": "inputs.video_frames"},
    ]
    if fps is not None:
        parameters.append({"name": "fps", "display_name": "FPS", "type": "number", "default_value": fps,
                           "node_id": "1", "field_path": "inputs.fps"})
    return WorkflowDefinition(
        name=name,
        display_name="Test Clip",
        type=type,
        workflow_json={"1": {"class_type": "VideoSampler", "inputs": {"text": "", "video_frames": 16}}},
        parameters=parameters,
    )


def memory_engine_with_workflows(*definitions: WorkflowDefinition):
    engine = make_memory_engine()
    manager = WorkflowManager(engine=engine)
    for definition in definitions or (keyframe_workflow(), clip_workflow()):
        manager.register(definition)
    return engine


def seed_project(engine, shot_count: int = 1, chained: bool = False):
    """Project with one scene and `shot_count` shots. With chained=True each shot links to the one before it."""
    with Session(engine) as session:
        project = Project(name="Lighthouse")
        session.add(project)
        session.flush()
        scene = Scene(project_id=project.id, scene_number=1, title="Opening")
        session.add(scene)
        session.flush()

        shots: List[Shot] = []
        for i in range(shot_count):
            shot = Shot(
                project_id=project.id,
                scene_id=scene.id,
                shot_code=f"S01-{i + 1:02d}",
                sequence_number=i + 1,
                duration=5.0,
                subject="a lighthouse keeper",
                environment="rocky coast",
            )
            session.add(shot)
            session.flush()
            if chained and shots:
                shot.previous_shot_id = shots[-1].id
                shot.use_last_frame_as_first = True
                shots[-1].next_shot_id = shot.id
                session.add(shots[-1])
            shots.append(shot)

        session.commit()
        for row in [project, scene] + shots:
            session.refresh(row)
        return project, scene, shots


def add_keyframe(engine, shot_id: str, **fields) -> Keyframe:
    values = dict(version=1, prompt="a lighthouse", workflow_name="test_keyframe", status=COMPLETED,
                  image_path="/tmp/reelforge/keyframe.png")
    values.update(fields)
    with Session(engine) as session:
        keyframe = Keyframe(shot_id=shot_id, **values)
        session.add(keyframe)
        session.commit()
        session.refresh(keyframe)
        return keyframe


def add_clip(engine, shot_id: str, **fields) -> Clip:
    values = dict(version=1, input_mode="text_to_video", prompt="a lighthouse", workflow_name="test_clip",
                  duration=5.0, fps=24, width=512, height=512, steps=10, guidance=2.0, cfg=7.0, seed=1,
                  status=COMPLETED, video_path="/tmp/reelforge/clip.mp4")
    values.update(fields)
    with Session(engine) as session:
        clip = Clip(shot_id=shot_id, **values)
        session.add(clip)
        session.commit()
        session.refresh(clip)
        return clip

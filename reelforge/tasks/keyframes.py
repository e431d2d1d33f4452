import random
import logging
from typing import List

from sqlmodel import Session

from reelforge import config
from reelforge.database import Keyframe, Shot, PENDING
from reelforge.errors import ReelforgeError
from reelforge.schemas import GenerationResult, KeyframeGenerationRequest
from reelforge.tasks.artifacts import ArtifactGenerator

logger = logging.getLogger(__name__)


def generate_prompt(shot: Shot) -> str:
    """Image prompt built from the shot's description fields."""
    parts = [
        shot.environment,
        shot.subject,
        shot.action,
        f"camera {shot.camera_movement}" if shot.camera_movement else None,
        shot.lighting,
        shot.style,
    ]
    prompt = ", ".join(p.strip() for p in parts if p and p.strip())
    return prompt or config.DEFAULT_PROMPT_KEYFRAME


def _keyframe_params(keyframe: Keyframe) -> dict:
    params = {
        "prompt": keyframe.prompt,
        "negative_prompt": keyframe.negative_prompt or "",
        "steps": keyframe.steps,
        "cfg": keyframe.cfg,
        "sampler": keyframe.sampler,
        "width": keyframe.width,
        "height": keyframe.height,
        "seed": keyframe.seed,
    }
    if keyframe.reference_image:
        params["reference_image"] = keyframe.reference_image
        params["reference_strength"] = keyframe.reference_strength
        # Strength is how much of the reference survives; the sampler takes the inverse
        if keyframe.reference_strength is not None:
            params["reference_denoise"] = round(1.0 - keyframe.reference_strength, 3)
    return params


class KeyframeGenerator(ArtifactGenerator):
    model = Keyframe
    artifact_type = "keyframe"
    output_field = "image_path"

    def _output_from_result(self, result: GenerationResult):
        return result.images[0] if result.images else None

    def keyframe_defaults(self, workflow_name: str) -> dict:
        """Workflow-declared defaults, falling back to the configured constants."""
        workflow = self.adapter.get_workflow(workflow_name)
        declared = {p["name"]: p.get("default_value") for p in workflow.parameters or []}
        return {
            name: declared[name] if declared.get(name) is not None else fallback
            for name, fallback in config.KEYFRAME_DEFAULTS.items()
        }

    async def generate_keyframes(self, shot_id: str, request: KeyframeGenerationRequest) -> List[Keyframe]:
        """
        Creates the fixed set of candidate keyframes for a shot and submits each one.
        Candidates share a version and prompt; a candidate whose submission fails is
        marked failed and the others still go out.
        """
        shot = self._get_shot(shot_id)
        defaults = self.keyframe_defaults(request.workflow_name)

        prompt = request.prompt or shot.optimized_prompt or generate_prompt(shot)

        reference_image = request.reference_image
        reference_strength = request.reference_strength
        if not reference_image:
            reference = await self.continuity.resolve_reference(shot, "keyframe")
            if reference:
                reference_image = reference.reference_image
                reference_strength = reference_strength or reference.strength
                logger.info(f"Shot {shot.shot_code}: using keyframe {reference.source_artifact_id} as reference")
        if reference_image:
            if reference_strength is None:
                reference_strength = config.KEYFRAME_CONTINUITY_STRENGTH
            if not self.adapter.accepts(request.workflow_name, "reference_image"):
                logger.warning(f"Workflow '{request.workflow_name}' takes no reference_image; "
                               f"shot {shot.shot_code} will render without continuity")

        settings = {
            key: getattr(request, key) if getattr(request, key) is not None else default
            for key, default in defaults.items()
        }

        # Persist every candidate before the first submission
        with Session(self.engine) as session:
            version = self.next_version(shot_id, session)
            candidates = []
            for i in range(config.KEYFRAME_CANDIDATES):
                seed = request.seed + i if request.seed is not None else random.randint(0, config.MAX_SEED)
                keyframe = Keyframe(
                    shot_id=shot_id,
                    version=version,
                    prompt=prompt,
                    negative_prompt=request.negative_prompt or "",
                    workflow_name=request.workflow_name,
                    seed=seed,
                    reference_image=reference_image,
                    reference_strength=reference_strength if reference_image else None,
                    status=PENDING,
                    **settings,
                )
                session.add(keyframe)
                candidates.append(keyframe)
            session.commit()
            candidate_ids = [k.id for k in candidates]
            params = [_keyframe_params(k) for k in candidates]

        logger.info(f"Shot {shot.shot_code}: submitting {len(candidate_ids)} keyframe candidates (v{version})")

        results = []
        for keyframe_id, candidate_params in zip(candidate_ids, params):
            try:
                results.append(await self._submit(keyframe_id, request.workflow_name, candidate_params))
            except ReelforgeError:
                results.append(self.get(keyframe_id))
        return results

    async def regenerate(self, keyframe_id: str) -> Keyframe:
        """New keyframe version for the same shot with the same generation parameters."""
        source = self.get(keyframe_id)
        with Session(self.engine) as session:
            keyframe = Keyframe(
                shot_id=source.shot_id,
                version=self.next_version(source.shot_id, session),
                prompt=source.prompt,
                negative_prompt=source.negative_prompt,
                workflow_name=source.workflow_name,
                steps=source.steps,
                cfg=source.cfg,
                sampler=source.sampler,
                width=source.width,
                height=source.height,
                seed=source.seed,
                reference_image=source.reference_image,
                reference_strength=source.reference_strength,
                status=PENDING,
            )
            session.add(keyframe)
            session.commit()
            session.refresh(keyframe)

        logger.info(f"Regenerating keyframe {keyframe_id} as {keyframe.id} (v{keyframe.version})")
        return await self._submit(keyframe.id, keyframe.workflow_name, _keyframe_params(keyframe))

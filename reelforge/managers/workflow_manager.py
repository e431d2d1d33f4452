import os
import json
import logging
from typing import Dict, List, Optional

import pydantic
from sqlmodel import Session, select

from reelforge import config
from reelforge.database import engine as default_engine, WorkflowConfig, utcnow
from reelforge.errors import ValidationError, WorkflowNotFound
from reelforge.schemas import WorkflowDefinition

logger = logging.getLogger("workflow_manager")


class WorkflowManager:
    """Loads workflow definition files into the WorkflowConfig table."""

    def __init__(self, engine=None, adapter=None):
        self.engine = engine or default_engine
        # Optional GenerationAdapter whose cache is dropped when a workflow changes
        self.adapter = adapter

    def parse_file(self, path: str) -> WorkflowDefinition:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValidationError(f"Unreadable workflow file {path}: {e}") from e
        try:
            return WorkflowDefinition.model_validate(raw)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid workflow definition in {path}",
                                  {"errors": [err["msg"] for err in e.errors()]}) from e

    def register(self, definition: WorkflowDefinition) -> WorkflowConfig:
        """Insert or update the workflow row named by the definition."""
        values = definition.model_dump()
        with Session(self.engine) as session:
            workflow = session.exec(select(WorkflowConfig).where(WorkflowConfig.name == definition.name)).first()
            if workflow:
                for key, value in values.items():
                    setattr(workflow, key, value)
                workflow.updated_at = utcnow()
                logger.info(f"Updated workflow '{definition.name}'")
            else:
                workflow = WorkflowConfig(**values)
                logger.info(f"Registered workflow '{definition.name}' ({definition.type})")
            session.add(workflow)
            session.commit()
            session.refresh(workflow)

        if self.adapter:
            self.adapter.invalidate(definition.name)
        return workflow

    def load_configs(self, directory: str = None) -> Dict[str, List[str]]:
        """
        Validates and registers every *.json file in the directory.
        A bad file is reported and skipped; the rest still load.
        """
        directory = directory or config.WORKFLOWS_DIR
        result = {"loaded": [], "failed": []}
        if not os.path.isdir(directory):
            logger.warning(f"Workflow directory not found: {directory}")
            return result

        for filename in sorted(os.listdir(directory)):
            if not filename.endswith(".json"):
                continue
            path = os.path.join(directory, filename)
            try:
                definition = self.parse_file(path)
            except ValidationError as e:
                logger.error(f"Skipping workflow file {filename}: {e}")
                result["failed"].append(filename)
                continue
            self.register(definition)
            result["loaded"].append(definition.name)

        logger.info(f"Workflow load complete: {len(result['loaded'])} loaded, {len(result['failed'])} failed")
        return result

    def list_workflows(self, type: Optional[str] = None, active_only: bool = True) -> List[WorkflowConfig]:
        with Session(self.engine) as session:
            query = select(WorkflowConfig)
            if type:
                query = query.where(WorkflowConfig.type == type)
            if active_only:
                query = query.where(WorkflowConfig.is_active == True)  # noqa: E712
            return list(session.exec(query.order_by(WorkflowConfig.name)).all())

    def set_active(self, name: str, is_active: bool) -> WorkflowConfig:
        with Session(self.engine) as session:
            workflow = session.exec(select(WorkflowConfig).where(WorkflowConfig.name == name)).first()
            if not workflow:
                raise WorkflowNotFound(name)
            workflow.is_active = is_active
            workflow.updated_at = utcnow()
            session.add(workflow)
            session.commit()
            session.refresh(workflow)

        if self.adapter:
            self.adapter.invalidate(name)
        return workflow

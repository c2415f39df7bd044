"""SQLAlchemy models for task state, artifacts and resolved objects."""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


OPERATION_PLAN_IDENTIFY = "Plan: Identify"
OPERATION_PLAN_REMAINING = "Plan: Remaining"
OPERATION_CLASSIFY = "Classify"
OPERATION_EXTRACT_IDENTITY = "Extract Identity"
OPERATION_EXTRACT_REMAINING = "Extract Remaining"

EXTRACTION_OPERATIONS = (OPERATION_EXTRACT_IDENTITY, OPERATION_EXTRACT_REMAINING)


process_input_artifacts = Table(
    "process_input_artifacts",
    Base.metadata,
    Column("task_process_id", ForeignKey("task_processes.id"), primary_key=True),
    Column("artifact_id", ForeignKey("artifacts.id"), primary_key=True),
)

process_output_artifacts = Table(
    "process_output_artifacts",
    Base.metadata,
    Column("task_process_id", ForeignKey("task_processes.id"), primary_key=True),
    Column("artifact_id", ForeignKey("artifacts.id"), primary_key=True),
)


class TaskDefinition(Base):
    __tablename__ = "task_definitions"

    id = Column(Integer, primary_key=True)
    team_id = Column(Integer, nullable=False, default=1)
    name = Column(String(255), nullable=False)
    schema_definition_id = Column(Integer, nullable=True)
    schema_name = Column(String(255), nullable=True)
    schema_json = Column(JSON, nullable=False, default=dict)
    runner_config = Column(JSON, nullable=False, default=dict)
    # Holds the plan cache under "extraction_plan_cache".
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    runs = relationship("TaskRun", back_populates="task_definition")


class TaskRun(Base):
    __tablename__ = "task_runs"

    id = Column(Integer, primary_key=True)
    task_definition_id = Column(Integer, ForeignKey("task_definitions.id"), nullable=False)
    output_artifact_id = Column(Integer, ForeignKey("artifacts.id"), nullable=True)
    meta = Column(JSON, nullable=False, default=dict)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    task_definition = relationship("TaskDefinition", back_populates="runs")
    output_artifact = relationship("Artifact", foreign_keys=[output_artifact_id])
    processes = relationship(
        "TaskProcess", back_populates="task_run", order_by="TaskProcess.id"
    )

    @property
    def team_id(self) -> int:
        return self.task_definition.team_id


class TaskProcess(Base):
    __tablename__ = "task_processes"

    id = Column(Integer, primary_key=True)
    task_run_id = Column(Integer, ForeignKey("task_runs.id"), nullable=False)
    operation = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    meta = Column(JSON, nullable=False, default=dict)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    task_run = relationship("TaskRun", back_populates="processes")
    input_artifacts = relationship(
        "Artifact", secondary=process_input_artifacts, order_by="Artifact.id"
    )
    output_artifacts = relationship(
        "Artifact", secondary=process_output_artifacts, order_by="Artifact.id"
    )

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None


class StoredFile(Base):
    __tablename__ = "stored_files"

    id = Column(Integer, primary_key=True)
    filename = Column(String(512), nullable=False)
    sha256 = Column(String(64), nullable=True)
    # Page-level files point at the document they were split from.
    original_stored_file_id = Column(Integer, ForeignKey("stored_files.id"), nullable=True)
    page_number = Column(Integer, nullable=True)
    # Holds the classification cache under "classifications".
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Artifact(Base):
    __tablename__ = "artifacts"

    id = Column(Integer, primary_key=True)
    task_run_id = Column(Integer, nullable=True, index=True)
    parent_artifact_id = Column(Integer, ForeignKey("artifacts.id"), nullable=True, index=True)
    stored_file_id = Column(Integer, ForeignKey("stored_files.id"), nullable=True)
    name = Column(String(255), nullable=False)
    position = Column(Integer, nullable=True)
    text_content = Column(Text, nullable=True)
    json_content = Column(JSON(none_as_null=True), nullable=True)
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    stored_file = relationship("StoredFile")
    parent = relationship("Artifact", remote_side=[id])


class ResolvedObject(Base):
    __tablename__ = "resolved_objects"

    id = Column(Integer, primary_key=True)
    team_id = Column(Integer, nullable=False, index=True)
    type = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    date = Column(Date, nullable=True)
    description = Column(Text, nullable=True)
    url = Column(String(2048), nullable=True)
    root_object_id = Column(Integer, ForeignKey("resolved_objects.id"), nullable=True, index=True)
    schema_definition_id = Column(Integer, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    attributes = relationship(
        "ObjectAttribute",
        back_populates="resolved_object",
        cascade="all, delete-orphan",
        order_by="ObjectAttribute.id",
    )


class ObjectAttribute(Base):
    __tablename__ = "object_attributes"

    id = Column(Integer, primary_key=True)
    object_id = Column(Integer, ForeignKey("resolved_objects.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False, index=True)
    text_value = Column(Text, nullable=True)
    json_value = Column(JSON(none_as_null=True), nullable=True)

    resolved_object = relationship("ResolvedObject", back_populates="attributes")

    def get_value(self):
        """Structured value when present, else the textual one."""
        if self.json_value is not None:
            return self.json_value
        return self.text_value


class ObjectRelationship(Base):
    __tablename__ = "object_relationships"

    id = Column(Integer, primary_key=True)
    object_id = Column(Integer, ForeignKey("resolved_objects.id"), nullable=False, index=True)
    related_object_id = Column(
        Integer, ForeignKey("resolved_objects.id"), nullable=False, index=True
    )
    relationship_name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

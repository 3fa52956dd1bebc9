from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from stepagent.model import Build, Job, Pipeline, Secret, Step

# -------------------- Control plane records --------------------


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CommandRecord(_Record):
    name: str
    command: str = ""


class BuildRecord(_Record):
    id: int
    job_id: int = Field(alias="jobId")
    sha: str = ""
    steps: list[CommandRecord] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)

    def to_build(self) -> Build:
        return Build(
            id=self.id,
            job_id=self.job_id,
            sha=self.sha,
            steps=tuple(Step(name=c.name, cmd=c.command) for c in self.steps),
            environment=dict(self.environment),
        )


class JobRecord(_Record):
    id: int
    name: str
    pipeline_id: int = Field(alias="pipelineId")

    def to_job(self) -> Job:
        return Job(id=self.id, name=self.name, pipeline_id=self.pipeline_id)


class ScmRepo(_Record):
    name: str


class PipelineRecord(_Record):
    id: int
    scm_uri: str = Field(alias="scmUri")
    scm_repo: ScmRepo = Field(alias="scmRepo")

    def to_pipeline(self) -> Pipeline:
        return Pipeline(id=self.id, scm_uri=self.scm_uri, scm_repo_name=self.scm_repo.name)


class SecretRecord(_Record):
    name: str
    value: str = Field(repr=False)

    def to_secret(self) -> Secret:
        return Secret(name=self.name, value=self.value)


# -------------------- Status updates --------------------


class StepStartUpdate(_Record):
    start_time: str = Field(serialization_alias="startTime")


class StepStopUpdate(_Record):
    end_time: str = Field(serialization_alias="endTime")
    code: int


class BuildStatusUpdate(_Record):
    status: str

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Optional, Union

from ..errors import PipelineError
from ..storage.models import Operation
from .step import Step

Condition = Callable[[Operation], bool]


@dataclass(frozen=True)
class StageStep:
    step: Step
    # the step is skipped when the condition is false for the current operation
    condition: Optional[Condition] = None

    @property
    def name(self) -> str:
        return self.step.name

    def applies(self, operation: Operation) -> bool:
        return self.condition is None or bool(self.condition(operation))


@dataclass(frozen=True)
class Stage:
    """Named, ordered group of steps; the unit of resumability."""

    name: str
    steps: tuple[StageStep, ...]

    def __post_init__(self) -> None:
        if not self.name:
            raise PipelineError("stage name cannot be empty")
        if not self.steps:
            raise PipelineError(f"stage {self.name!r} has no steps")
        names = [s.name for s in self.steps]
        if len(set(names)) != len(names):
            raise PipelineError(f"stage {self.name!r} contains duplicate step names: {names}")

    @classmethod
    def of(cls, name: str, *steps: Union[Step, StageStep]) -> "Stage":
        return cls(
            name=name,
            steps=tuple(s if isinstance(s, StageStep) else StageStep(s) for s in steps),
        )


@dataclass(frozen=True)
class Pipeline:
    """
    Fixed, linear sequence of stages, injected into a manager at construction.
    """

    stages: tuple[Stage, ...]

    def __post_init__(self) -> None:
        if not self.stages:
            raise PipelineError("pipeline has no stages")
        names = self.stage_names
        if len(set(names)) != len(names):
            raise PipelineError(f"duplicate stage names: {list(names)}")

    @classmethod
    def of(cls, *stages: Stage) -> "Pipeline":
        return cls(stages=tuple(stages))

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(stage.name for stage in self.stages)

    def __iter__(self) -> Iterator[Stage]:
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)

    def unfinished_stages(self, operation: Operation) -> list[Stage]:
        """Stages still to run, decided only by the persisted finished_stages."""
        return [stage for stage in self.stages if not operation.is_stage_finished(stage.name)]

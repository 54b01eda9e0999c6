from __future__ import annotations


class FormCoachError(Exception):
    """Base class for errors raised by formcoach."""


class ConfigurationError(FormCoachError, ValueError):
    """A threshold table or tracker config is malformed."""


class UnknownExerciseError(FormCoachError, KeyError):
    def __init__(self, exercise: str):
        super().__init__(exercise)
        self.exercise = exercise

    def __str__(self) -> str:
        return f"unknown exercise: {self.exercise!r}"


class ExerciseMismatchError(FormCoachError):
    """An analyzer was handed the state of a different exercise."""


class StoreClosedError(FormCoachError, RuntimeError):
    pass


class ProviderError(FormCoachError, RuntimeError):
    """Camera or pose provider failure."""

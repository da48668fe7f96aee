"""Declarative state machine loaded from a TOML definition.

A definition looks like::

    name = "dev_flow"
    initial_state = "authoring"
    states = ["authoring", "scaffolding"]

    [[transitions]]
    event = "SCAFFOLD"
    from = "authoring"          # or a list of states
    to = "scaffolding"

Every referenced state is checked when the machine is built, so a bad
definition fails on load and never mid-transition.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from importlib import resources
from typing import Any


class StateMachineError(RuntimeError):
    pass


class InvalidConfigError(StateMachineError):
    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid state machine config: " + "; ".join(self.errors))


class InvalidStateError(StateMachineError):
    def __init__(self, state: str) -> None:
        self.state = state
        super().__init__(f"Unknown state: {state}")


class InvalidTransitionError(StateMachineError):
    def __init__(self, current_state: str, event: str) -> None:
        self.current_state = current_state
        self.event = event
        super().__init__(f"No transition for event {event!r} from state {current_state!r}")


@dataclass(frozen=True, slots=True)
class Transition:
    event: str
    sources: tuple[str, ...]
    target: str


@dataclass(frozen=True, slots=True)
class StateMachineConfig:
    name: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StateMachineConfig:
        transitions = []
        for item in payload.get("transitions", []):
            sources = item.get("from", [])
            if isinstance(sources, str):
                sources = [sources]
            transitions.append(
                Transition(
                    event=str(item.get("event", "")),
                    sources=tuple(str(source) for source in sources),
                    target=str(item.get("to", "")),
                )
            )
        return cls(
            name=str(payload.get("name", "")),
            initial_state=str(payload.get("initial_state", "")),
            states=tuple(str(state) for state in payload.get("states", [])),
            transitions=tuple(transitions),
        )


def validate_config(config: StateMachineConfig) -> list[str]:
    errors: list[str] = []
    declared = set(config.states)
    if not config.states:
        errors.append("No states declared")
    if len(declared) != len(config.states):
        errors.append("Duplicate state declared")
    if config.initial_state not in declared:
        errors.append(f"Initial state {config.initial_state!r} is not declared")

    for transition in config.transitions:
        if not transition.event:
            errors.append("Transition without an event name")
        if not transition.sources:
            errors.append(f"Transition {transition.event!r} has no source state")
        for source in transition.sources:
            if source not in declared:
                errors.append(
                    f"Transition {transition.event!r} references undeclared state {source!r}"
                )
        if transition.target not in declared:
            errors.append(
                f"Transition {transition.event!r} references undeclared state "
                f"{transition.target!r}"
            )
    return errors


class StateMachine:
    def __init__(self, config: StateMachineConfig) -> None:
        errors = validate_config(config)
        if errors:
            raise InvalidConfigError(errors)
        self.config = config
        self._states = frozenset(config.states)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def initial_state(self) -> str:
        return self.config.initial_state

    def _check_state(self, state: str) -> None:
        if state not in self._states:
            raise InvalidStateError(state)

    def _matching(self, current_state: str):
        for transition in self.config.transitions:
            if current_state in transition.sources:
                yield transition

    def transition(self, current_state: str, event: str) -> str:
        self._check_state(current_state)
        for candidate in self._matching(current_state):
            if candidate.event == event:
                return candidate.target
        raise InvalidTransitionError(current_state, event)

    def can_transition(self, current_state: str, event: str) -> bool:
        if current_state not in self._states:
            return False
        return any(candidate.event == event for candidate in self._matching(current_state))

    def available_events(self, current_state: str) -> list[str]:
        self._check_state(current_state)
        events: list[str] = []
        for candidate in self._matching(current_state):
            if candidate.event not in events:
                events.append(candidate.event)
        return events

    def next_states(self, current_state: str) -> list[str]:
        self._check_state(current_state)
        targets: list[str] = []
        for candidate in self._matching(current_state):
            if candidate.target not in targets:
                targets.append(candidate.target)
        return targets


def parse_state_machine(text: str) -> StateMachine:
    try:
        payload = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise InvalidConfigError([f"Malformed TOML: {exc}"]) from exc
    return StateMachine(StateMachineConfig.from_dict(payload))


def load_state_machine(name: str) -> StateMachine:
    """Load one of the bundled definitions, e.g. ``dev_flow`` or ``runtime_flow``."""
    resource = resources.files("forge.state_machines").joinpath(f"{name}.toml")
    if not resource.is_file():
        raise InvalidConfigError([f"Unknown state machine: {name}"])
    return parse_state_machine(resource.read_text(encoding="utf-8"))

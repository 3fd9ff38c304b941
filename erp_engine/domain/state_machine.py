from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Tuple, Type

from erp_engine.domain.contracts import ActorContext
from erp_engine.domain.models import ActorClass
from erp_engine.errors import Forbidden, GuardFailed, InvalidTransition


_LOGGER = logging.getLogger("erp_engine")

Guard = Callable[[Any], bool]
SideEffect = Callable[[Any, Any], None]


@dataclass(frozen=True)
class TransitionRule:
    source: Enum
    target: Enum
    required_actor: ActorClass
    guard: Guard | None = None
    guard_message_key: str = "guard_failed"
    side_effect: SideEffect | None = None


class StateMachine:
    """Transition validator for one document type.

    Rules are keyed by ``(source, target)``; a status is terminal when it has no
    outgoing rule. The declared ``terminal`` set is checked against the rules on
    construction so a table cannot silently leak out of a final state.
    """

    def __init__(
        self,
        name: str,
        status_type: Type[Enum],
        initial: Enum,
        terminal: Iterable[Enum],
        rules: Iterable[TransitionRule],
    ) -> None:
        self.name = name
        self.status_type = status_type
        self.initial = status_type(initial)
        self._rules: Dict[Tuple[Enum, Enum], TransitionRule] = {}
        for rule in rules:
            key = (status_type(rule.source), status_type(rule.target))
            if key in self._rules:
                raise ValueError(f"{name}: duplicate transition {key[0].value} -> {key[1].value}")
            self._rules[key] = rule
        self.terminal: FrozenSet[Enum] = frozenset(status_type(item) for item in terminal)
        self._check_table()

    def _check_table(self) -> None:
        transitions = self.transitions
        for status in self.states:
            has_exit = bool(transitions.get(status))
            if status in self.terminal and has_exit:
                raise ValueError(f"{self.name}: terminal status {status.value} has outgoing transitions")
            if status not in self.terminal and not has_exit:
                raise ValueError(f"{self.name}: status {status.value} has no outgoing transition")

    @property
    def states(self) -> FrozenSet[Enum]:
        return frozenset(self.status_type)

    @property
    def transitions(self) -> Dict[Enum, FrozenSet[Enum]]:
        table: Dict[Enum, set] = {status: set() for status in self.status_type}
        for source, target in self._rules:
            table[source].add(target)
        return {status: frozenset(targets) for status, targets in table.items()}

    def rules(self) -> list[TransitionRule]:
        return list(self._rules.values())

    def rule_for(self, source: Enum | str, target: Enum | str) -> TransitionRule:
        try:
            key = (self.status_type(source), self.status_type(target))
        except ValueError:
            raise InvalidTransition(details=f"{self.name}: unknown status {source} -> {target}") from None
        rule = self._rules.get(key)
        if rule is None:
            raise InvalidTransition(
                details=f"{self.name}: {key[0].value} -> {key[1].value} is not allowed",
                payload={"status": key[0].value, "target_status": key[1].value},
            )
        return rule

    def allowed_targets(self, status: Enum | str, actor_class: ActorClass | None = None) -> list[str]:
        source = self.status_type(status)
        return sorted(
            target.value
            for (rule_source, target), rule in self._rules.items()
            if rule_source == source and (actor_class is None or rule.required_actor == actor_class)
        )

    def can_transition(self, document: Any, target: Enum | str, actor: ActorContext | ActorClass) -> bool:
        try:
            rule = self.rule_for(document.status, target)
        except InvalidTransition:
            return False
        if _actor_class(actor) != rule.required_actor:
            return False
        return rule.guard is None or bool(rule.guard(document))

    def transition(
        self,
        document: Any,
        target: Enum | str,
        actor: ActorContext | ActorClass,
        context: Any = None,
    ):
        """Move ``document`` to ``target`` in place and return it.

        The caller persists the document inside the same unit of work that is
        handed to the side effect as ``context``.
        """
        rule = self.rule_for(document.status, target)
        actor_class = _actor_class(actor)
        if actor_class != rule.required_actor:
            raise Forbidden(
                details=f"{self.name}: {rule.source.value} -> {rule.target.value} requires {rule.required_actor.value}",
                payload={"required_actor": rule.required_actor.value},
            )
        if rule.guard is not None and not rule.guard(document):
            raise GuardFailed(
                message_key=rule.guard_message_key,
                details=f"{self.name}: guard rejected {rule.source.value} -> {rule.target.value}",
            )
        if rule.side_effect is not None:
            rule.side_effect(document, context)

        previous = document.status
        document.status = rule.target
        _LOGGER.info(
            "document_transition",
            extra={
                "document_kind": self.name,
                "document_id": getattr(document, "id", None),
                "from_status": previous.value,
                "to_status": rule.target.value,
                "actor_class": actor_class.value,
            },
        )
        return document

    def with_side_effects(self, side_effects: Mapping[Tuple[Enum, Enum], SideEffect]) -> "StateMachine":
        rules = []
        for (source, target), rule in self._rules.items():
            effect = side_effects.get((source, target), rule.side_effect)
            rules.append(
                TransitionRule(
                    source=rule.source,
                    target=rule.target,
                    required_actor=rule.required_actor,
                    guard=rule.guard,
                    guard_message_key=rule.guard_message_key,
                    side_effect=effect,
                )
            )
        return StateMachine(self.name, self.status_type, self.initial, self.terminal, rules)


def _actor_class(actor: ActorContext | ActorClass | str) -> ActorClass:
    if isinstance(actor, ActorContext):
        return actor.actor_class
    return ActorClass(actor)

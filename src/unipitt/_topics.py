"""Line name / MQTT topic mapping.

Line names (``di_1_01``, ``do_2_01``, ...) come from the sysfs
directory names.  Operators may give a line a friendlier *alias*;
the alias replaces the name on the wire.

Topic convention::

    {prefix}{alias}{state_suffix}   → input state (published, retained)
    {prefix}{alias}{set_suffix}     → output command (subscribed)

``prefix`` is literal: no separator is inserted, so a prefix of
``"home/"`` gives ``home/kitchen switch/state``.  Lines without an
alias use their own name as alias.

The mapping is an immutable value object; both directions are pure
functions of the alias table, prefix and suffix.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType


@dataclass(frozen=True)
class TopicMap:
    """Bidirectional mapping between line names and MQTT topics.

    ``topic()`` is exact; ``name()`` is the best-effort inverse.
    For every configured alias ``name(topic(n, s), s) == n``, and for
    unaliased names the same holds as long as the name does not itself
    collide with somebody else's alias.
    """

    aliases: Mapping[str, str] = field(default_factory=dict)
    prefix: str = ""
    state_suffix: str = "/state"
    set_suffix: str = "/set"
    _reverse: dict[str, Mapping[str, str]] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    def __post_init__(self) -> None:
        aliases = MappingProxyType(dict(self.aliases))
        object.__setattr__(self, "aliases", aliases)
        for suffix in {self.state_suffix, self.set_suffix}:
            self._reverse[suffix] = self._build_reverse(suffix)

    def _build_reverse(self, suffix: str) -> Mapping[str, str]:
        # Values need not be unique; the first configured name wins.
        reverse: dict[str, str] = {}
        for name, alias in self.aliases.items():
            reverse.setdefault(self.prefix + alias + suffix, name)
        return MappingProxyType(reverse)

    # -- Generic directions ---------------------------------------------

    def alias(self, name: str) -> str:
        """Return the configured alias for *name*, or *name* itself."""
        return self.aliases.get(name, name)

    def topic(self, name: str, suffix: str = "") -> str:
        """Return ``prefix + alias(name) + suffix``."""
        return self.prefix + self.alias(name) + suffix

    def name(self, topic: str, suffix: str = "") -> str:
        """Resolve *topic* back to a line name.

        Tries an exact lookup among the configured aliases first.
        Otherwise strips *suffix* and the prefix when present and
        returns what is left, which is the raw *topic* when neither
        matched.
        """
        reverse = self._reverse.get(suffix)
        if reverse is None:
            reverse = self._build_reverse(suffix)
        if topic in reverse:
            return reverse[topic]

        if suffix and topic.endswith(suffix):
            topic = topic[: -len(suffix)]
        if self.prefix and topic.startswith(self.prefix):
            topic = topic[len(self.prefix) :]
        return topic

    # -- Fixed convention -----------------------------------------------

    def state_topic(self, name: str) -> str:
        """Topic the state of input line *name* is published to."""
        return self.topic(name, self.state_suffix)

    def command_topic(self, name: str) -> str:
        """Topic output line *name* receives commands on."""
        return self.topic(name, self.set_suffix)

    def command_name(self, topic: str) -> str:
        """Line name addressed by the command *topic*."""
        return self.name(topic, self.set_suffix)

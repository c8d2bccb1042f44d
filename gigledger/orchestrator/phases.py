"""Pipeline phase definitions: the run state machine and its transitions."""

from __future__ import annotations

from enum import Enum


class Phase(str, Enum):
    """All pipeline phases. A run moves through them strictly in order."""

    INIT = "INIT"
    FINGERPRINT = "FINGERPRINT"
    EXTRACT = "EXTRACT"
    VALIDATE = "VALIDATE"
    FILTER = "FILTER"
    DEDUPLICATE = "DEDUPLICATE"
    ADAPT = "ADAPT"
    AGGREGATE = "AGGREGATE"
    INSIGHT = "INSIGHT"
    COMPLETE = "COMPLETE"
    FAIL = "FAIL"


VALID_TRANSITIONS: dict[Phase, set[Phase]] = {
    Phase.INIT: {Phase.FINGERPRINT, Phase.FAIL},
    Phase.FINGERPRINT: {Phase.EXTRACT, Phase.FAIL},
    Phase.EXTRACT: {Phase.VALIDATE, Phase.FAIL},
    Phase.VALIDATE: {Phase.FILTER, Phase.FAIL},
    Phase.FILTER: {Phase.DEDUPLICATE, Phase.FAIL},
    Phase.DEDUPLICATE: {Phase.ADAPT, Phase.FAIL},
    Phase.ADAPT: {Phase.AGGREGATE, Phase.FAIL},
    Phase.AGGREGATE: {Phase.INSIGHT, Phase.COMPLETE, Phase.FAIL},
    Phase.INSIGHT: {Phase.COMPLETE, Phase.FAIL},
    Phase.COMPLETE: set(),  # terminal
    Phase.FAIL: set(),  # terminal
}

TERMINAL_PHASES = {Phase.COMPLETE, Phase.FAIL}

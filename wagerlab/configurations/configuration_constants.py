from __future__ import annotations

import dataclasses


@dataclasses.dataclass(frozen=True)
class SessionModes:
    Waiting = "waiting"
    Solo = "solo"
    Group = "group"


@dataclasses.dataclass(frozen=True)
class SessionStatuses:
    Waiting = "waiting"
    Running = "running"
    Ended = "ended"


@dataclasses.dataclass(frozen=True)
class Phases:
    Initial = "initial"
    GroupDelib = "groupDelib"
    FinalDecision = "finalDecision"
    Result = "result"


@dataclasses.dataclass(frozen=True)
class SubPhases:
    Wager = "wager"
    Chat = "chat"


@dataclasses.dataclass(frozen=True)
class WagerTypes:
    Initial = "initialWager"
    Final = "finalWager"


@dataclasses.dataclass(frozen=True)
class InboundMessages:
    Register = "register"
    Chat = "chat"
    StartSession = "startSession"
    UpdateWager = "updateWager"
    ConfirmDecision = "confirmDecision"
    SendData = "sendData"


@dataclasses.dataclass(frozen=True)
class DataEvents:
    TrialData = "trialData"
    PreTaskSurvey = "preTaskSurvey"
    PostTaskSurvey = "postTaskSurvey"
    FinishSession = "finishSession"


@dataclasses.dataclass(frozen=True)
class OutboundMessages:
    ParticipantCount = "participantCount"
    SessionUpdate = "sessionUpdate"
    SessionStarted = "sessionStarted"
    PhaseChange = "phaseChange"
    RejoinSession = "rejoinSession"
    AllWagersSubmitted = "allWagersSubmitted"
    IndividualWager = "individualWager"
    Chat = "chat"
    WagerUpdated = "wagerUpdated"
    DecisionConfirmed = "decisionConfirmed"
    DataSent = "dataSent"
    TrialsCompleted = "trialsCompleted"
    Error = "error"
    ExperimentConfig = "experimentConfig"


# Collections in the document store
SESSIONS_COLLECTION = "sessions"
TRIALS_SUBCOLLECTION = "trials"
PARTICIPANT_DATA_SUBCOLLECTION = "participantData"

# Timing defaults, in seconds
DEFAULT_WAITING_DURATION_S = 30
DEFAULT_PHASE_DURATION_S = 15
DEFAULT_CHAT_DURATION_S = 30

# A full cohort is a triad
DEFAULT_GROUP_SIZE = 3

# Discrete wager scale shown on the client slider
DEFAULT_WAGER_MIN = 0
DEFAULT_WAGER_MAX = 4
DEFAULT_WAGER = 2

UNKNOWN_AI_MODE = "unknown"

CONTENT_FILE_SUFFIXES = (".csv", ".tsv", ".txt")

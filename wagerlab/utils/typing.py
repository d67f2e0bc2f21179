from __future__ import annotations

from typing import Any

SubjectID = str
SessionID = str
SocketID = str
AIMode = str
TrialNumber = int
TrialRow = dict[str, Any]

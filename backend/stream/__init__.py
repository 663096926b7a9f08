"""Stream reconciliation and completion detection.

Pipeline, leaves first:

    TransportReader -> EventNormalizer -> IdentityTracker -> TimelineAggregator
                                                              |-> CompletionHeuristics -> StatusPoller
                                                              |-> ArtifactExtractor

ConversationSession owns one instance of each stage and is the only place
that mutates session state.
"""

from stream.artifacts import ArtifactExtractor, ArtifactSet
from stream.completion import CompletionHeuristics, CompletionReport
from stream.identity import IdentityTracker
from stream.normalizer import EventNormalizer
from stream.poller import PollOutcome, PollResult, StatusPoller
from stream.session import ConversationSession, TurnSummary
from stream.timeline import TimelineAggregator, TimelineChange
from stream.transport import TransportReader

__all__ = [
    "ArtifactExtractor",
    "ArtifactSet",
    "CompletionHeuristics",
    "CompletionReport",
    "ConversationSession",
    "EventNormalizer",
    "IdentityTracker",
    "PollOutcome",
    "PollResult",
    "StatusPoller",
    "TimelineAggregator",
    "TimelineChange",
    "TransportReader",
    "TurnSummary",
]

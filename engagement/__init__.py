"""
Lead analysis for the Lead Engagement Engine.

This module handles:
- Conversation analysis (vehicle interest, buying signals, temperature, stage)
- Behavioral trigger rules
- Predictive lead scoring
"""

from .conversation_analyzer import ConversationAnalysis, ConversationAnalyzer, TranscriptMessage
from .predictive_scorer import Prediction, PredictiveScorer
from .trigger_engine import BehavioralTriggerEngine, Condition, TriggerRule

__all__ = [
    "ConversationAnalysis",
    "ConversationAnalyzer",
    "TranscriptMessage",
    "Prediction",
    "PredictiveScorer",
    "BehavioralTriggerEngine",
    "Condition",
    "TriggerRule",
]

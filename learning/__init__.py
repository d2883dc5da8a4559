"""
Learning feedback loop for the Lead Engagement Engine.
"""

from .feedback_loop import Insight, InsightType, LearningEvent, LearningEventType, LearningFeedbackLoop

__all__ = ["Insight", "InsightType", "LearningEvent", "LearningEventType", "LearningFeedbackLoop"]

"""
API Module for the Lead Engagement Engine.

FastAPI application (``api.main``) with routes for:
- Running engagement sweeps
- Recording inbound replies
- Aggressive sequence control
- Triggers, predictions and learning insights
"""

"""Mini Library - services package

This package contains service modules for external integrations:
- HTTP client abstraction
- Gemini language-model service
- AI library assistant (search, recommendations, summaries, chat)
"""

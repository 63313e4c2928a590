"""Suggestion engine, feedback loop and persistence."""

from .config import Config, SuggestOptions
from .models import Entity, EntityCategory, StrictnessMode
from .pipeline import SuggestionEngine

__all__ = ["Config", "SuggestOptions", "Entity", "EntityCategory", "StrictnessMode", "SuggestionEngine"]

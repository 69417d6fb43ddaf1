"""Synthetic survey data generation."""

from .generate_survey_data import SurveyDataGenerator

__all__ = ['SurveyDataGenerator']

"""Classifier result models."""

from dataclasses import dataclass


@dataclass
class Prediction:
    """One ranked species prediction."""
    species: str
    confidence: float

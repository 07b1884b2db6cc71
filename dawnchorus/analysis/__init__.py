"""Classifier interface and result publishing."""

from .base import AbstractClassifier, load_classifier, pcm_to_float32
from .publisher import AnalysisPublisher

__all__ = [
    "AbstractClassifier",
    "load_classifier",
    "pcm_to_float32",
    "AnalysisPublisher",
]

"""Tutor engines: prompt pipeline, conversation memory, personalization and feedback delivery."""

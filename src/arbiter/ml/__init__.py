"""Feature engineering, metrics, explainability and candidate trainers."""

"""ExamFlow - online exam submission pipeline."""

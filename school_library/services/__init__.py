"""External services: Gemini AI assistant and uploaded-file parsing."""

"""Live meeting transcription client and relay."""

"""Voice Therapist: a client-side turn-taking engine for spoken therapy sessions."""

__version__ = "1.0.0"

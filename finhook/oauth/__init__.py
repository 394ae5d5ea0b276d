"""PKCE credential handoff and OAuth completion."""

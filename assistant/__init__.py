"""Voice assistant core: sessions, turn-taking, error recovery and the HTTP surface."""

"""Game engine: the rules and the session state machine."""

"""Canvas domain: entities, placement geometry, the state store and the orchestrator."""

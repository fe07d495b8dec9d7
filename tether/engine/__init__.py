"""Engine: provider client, retry escalation, compaction, tools, plan, sub-agents and the turn loop."""

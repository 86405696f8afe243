"""Medical records: lifecycle state machine and correction workflow."""

"""Outreach sequencer: multi-channel sequence enrollment engine."""

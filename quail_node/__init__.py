"""Monitoring and control node for the QuailSmart farm controller."""

"""Automated PR remediation monitors driven by an out-of-process control loop."""

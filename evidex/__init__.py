"""
Evidex

Evidence log analysis: rule matching, threat scoring, MITRE ATT&CK mapping
and timelines.
"""

__version__ = "0.1.0"

"""
Transcript access for usage reconstruction.

Discovers, fetches and parses per-message JSONL transcripts on local
and remote hosts.
"""

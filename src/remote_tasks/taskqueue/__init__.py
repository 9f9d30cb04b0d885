"""Shared pull queue of shell commands.

Runners on independent machines claim the oldest pending task of a tag with a
single conditional update, keep it alive with heartbeats, and stream captured
output back as append-only log chunks that any reader can replay.
"""

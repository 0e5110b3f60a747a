"""
Multi-Channel Abstraction Layer.

Provides a common interface for any messaging channel (LINE, Mattermost,
Slack, …) so the agent runtime remains channel-agnostic.
"""

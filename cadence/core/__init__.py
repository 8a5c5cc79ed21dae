"""Conversation plumbing around the streaming core: context, tools, turns and events."""

"""Conversation core: content model, sanitizer, context budget, completion and tool loop."""

"""Core functionality (session gateway, change watcher, orchestrator)"""

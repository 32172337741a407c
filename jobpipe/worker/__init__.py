"""
Worker module.
Contains the queue consumers and the worker process entry point.
"""

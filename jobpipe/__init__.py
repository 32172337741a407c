"""
Asynchronous Job Pipeline

Producer, RabbitMQ consume loops with header-tracked retry and dead-lettering,
and the mail and notification worker pipelines built on top of them.
"""

__version__ = "1.0.0"

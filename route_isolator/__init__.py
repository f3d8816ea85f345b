"""route-isolator.

A build utility that splits a server-rendered web app's standalone output into
minimal, independently deployable isolates (one per route or per app).
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"

"""NormalizedActivity -> database model transformers.

Submodules are imported directly (``transformers.activity``,
``transformers.polyline``); the activity schema depends on the polyline
codec, so nothing is re-exported here.
"""

"""
framecast: renders frame-parameterized browser scenes to video.
Groups the renderer, postprocessing, batch and server stages.
"""

__version__ = "0.3.0"

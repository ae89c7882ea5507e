"""
Postprocessing subpackage init.
Expose the audio mixer.
"""
from .audio_mixer import AudioMixer, build_filter_graph, should_mix

__all__ = ["AudioMixer", "build_filter_graph", "should_mix"]

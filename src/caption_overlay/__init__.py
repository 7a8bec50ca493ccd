"""Caption Overlay - burn captions into remotely hosted videos.

Two cooperating halves:
1. A resilient fetcher for Google Drive links that answer with
   "confirm download" interstitial pages instead of the file.
2. A deterministic layout engine that wraps caption text and turns it into
   an FFmpeg filter graph with stacked, seamless text boxes.
"""

__version__ = "0.1.0"

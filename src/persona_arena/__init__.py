#!/usr/bin/env python3
"""
Persona Debate Arena
"Me fail English? That's unpossible!" - Ralph Wiggum

Two configured personas argue a topic through a hosted generative-language
API; every turn is streamed, rendered and spoken before the next one starts.
"""

__version__ = "0.1.0"

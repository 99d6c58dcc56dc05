"""Media tag assistant: free-text descriptions to ranked VNDB / AniList matches."""

__version__ = "1.0.0"

"""media-courier: fetch YouTube media on request and deliver it to a chat."""

__version__ = "0.3.0"

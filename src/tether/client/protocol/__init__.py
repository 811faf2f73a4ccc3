"""Frame codec for the text protocol spoken between client and server."""

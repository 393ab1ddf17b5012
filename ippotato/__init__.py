"""
ip-potato - What is my IP?

A tiny web service that tells callers which public IP address they are
connecting from, as an HTML page, a JSON document or plain text depending
on what the client asks for.
"""

__version__ = "0.1.0"

"""Lamela Gateway: relay between a controller and browser-extension agents.

Browser extensions connect over WebSocket, register under an access code and
keep their session alive with pings. A controller connected to the same
endpoint sends ``main:`` command strings which the gateway routes to one or
all browsers, correlating the asynchronous results back to each command.

Quickstart::

    python -m lamela.server
    # or
    uvicorn lamela.server:app --host 0.0.0.0 --port 8080
"""

__version__ = "1.0.0"

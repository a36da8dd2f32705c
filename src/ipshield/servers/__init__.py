"""DNS listeners, the query responder, and the optional status webserver."""

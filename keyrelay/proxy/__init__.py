"""Request forwarding: translation, upstream invocation and relay."""

"""Chat domain: chats, messages, delivery and the socket gateway."""

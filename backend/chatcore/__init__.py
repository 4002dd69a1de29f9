"""Real-time messaging core: chats, delivery, presence and retention."""

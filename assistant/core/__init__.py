"""Agent core: token budgeting, context management, the tool loop and tracing."""

"""Queue message handlers and the dispatcher that runs them."""

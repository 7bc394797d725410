"""Event bus for decoupling the engine from UIs."""

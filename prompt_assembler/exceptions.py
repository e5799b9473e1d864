"""Exceptions raised while assembling a prompt."""


class PromptAssemblyError(Exception):
    """Base exception for prompt assembly."""
    pass


class IdentifierNotFoundError(PromptAssemblyError):
    """A named region or message was not found in the chat completion."""
    
    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Identifier {identifier} not found.")


class TokenBudgetExceededError(PromptAssemblyError):
    """A mandatory placement did not fit into the remaining token budget."""
    
    def __init__(self, identifier: str = ""):
        self.identifier = identifier
        super().__init__(f"Token budget exceeded. Message: {identifier}")


class InvalidCharacterNameError(PromptAssemblyError):
    """A name cannot be encoded into the message name field."""
    
    def __init__(self, name: str = ""):
        self.name = name
        super().__init__(f"Invalid character name. Message: {name}")


class AssemblyError(PromptAssemblyError):
    """Unexpected failure while preparing prompts."""
    
    def __init__(self, message: str, log: list[str] | None = None):
        self.log = log or []
        super().__init__(message)

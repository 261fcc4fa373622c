"""Test doubles for the external collaborators."""


class FakeLLM:
    """Stand-in for the language model; records prompts and attachments."""

    def __init__(self, reply: str = "Here is your plan.", error: Exception = None):
        self.reply = reply
        self.error = error
        self.calls = []

    def generate(self, prompt, attachment=None):
        self.calls.append((prompt, attachment))
        if self.error is not None:
            raise self.error
        return self.reply

from ..exceptions import InvalidRequest

ROLES = ("system", "user", "assistant")


class ConversationMessage:
    """One turn of a chat history as the engine sees it."""

    def __init__(self, role: str, content: str, images: list[str] | None = None):
        if role not in ROLES:
            raise InvalidRequest(f"Unsupported message role: {role!r}")
        self.role = role
        self.content = content
        self.images = list(images) if images else []

    @property
    def has_images(self) -> bool:
        return len(self.images) > 0

    @classmethod
    def from_dict(cls, data: dict) -> 'ConversationMessage':
        """Create a ConversationMessage from a request dictionary"""
        role = data.get("role", "user")
        content = cls._extract_content(data)
        return cls(role, content, data.get("images") or [])

    @staticmethod
    def _extract_content(data: dict) -> str:
        """Extract content from the data dictionary"""
        content = data.get("content")
        if content is None:
            return ""
        if isinstance(content, list):
            # Multi-part content from OpenAI-style clients: keep the text parts only
            return " ".join(item.get("text", "") for item in content if item.get("type") == "text")
        return str(content)

    def to_api_format(self) -> dict:
        """Convert to the Ollama chat message format"""
        formatted = {"role": self.role, "content": self.content}
        if self.images:
            formatted["images"] = list(self.images)
        return formatted

    def __repr__(self) -> str:
        return f"ConversationMessage(role={self.role!r}, chars={len(self.content)}, images={len(self.images)})"

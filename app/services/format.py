import re

# Plain format ids only: selector syntax (/ + [ ] , ( ) : *) is never accepted
# from clients, we build the selector ourselves.
FORMAT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.=\-]{1,50}$")


class FormatDecision:
    """Make format decisions"""

    @staticmethod
    def is_valid_format_id(format_id: str) -> bool:
        return bool(format_id) and FORMAT_ID_PATTERN.match(format_id) is not None

    @staticmethod
    def decide(format_id: str) -> str:
        """
        Selector for a client-chosen format id.
        Use the format as-is when it carries audio, otherwise pair it with the
        best audio track, and as a last resort take it alone.
        """
        return f"{format_id}[acodec!=none]/{format_id}+bestaudio/{format_id}"

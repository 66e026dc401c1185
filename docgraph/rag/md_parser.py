"""Markdown parser for extracting structure and metadata from documents.

Handles:
- YAML frontmatter parsing
- Heading hierarchy extraction
- Relative link extraction
- Fenced code block extraction
"""
import re
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
import yaml

logger = structlog.get_logger()


@dataclass
class Header:
    """A markdown heading with its position in the body."""

    level: int  # 1-6 for h1-h6
    text: str
    line: int  # 0-based line within the body
    offset: int  # character offset within the body


@dataclass
class Link:
    """A relative (internal) link."""

    text: str
    target: str
    line: int


@dataclass
class CodeBlock:
    """A fenced code block. Lines are 0-based, relative to the body."""

    language: Optional[str]
    code: str
    start_line: int
    end_line: int


@dataclass
class ParsedDocument:
    """Result of parsing one document. Check ``success`` before use."""

    success: bool
    body: str
    frontmatter: Dict[str, Any] = field(default_factory=dict)
    has_frontmatter: bool = False
    headers: List[Header] = field(default_factory=list)
    links: List[Link] = field(default_factory=list)
    code_blocks: List[CodeBlock] = field(default_factory=list)
    title: str = ""
    error: Optional[str] = None


class MarkdownParser:
    """Parser for markdown documents with frontmatter support."""

    FRONTMATTER_DELIMITER = "---"

    # ATX heading, optional closing hashes must be separated by whitespace
    HEADING_PATTERN = re.compile(r"^(#{1,6})[ \t]+(.+?)(?:[ \t]+#+)?[ \t]*$")

    # Opening fence: up to 3 spaces indent, 3+ backticks or tildes, info string
    FENCE_PATTERN = re.compile(r"^( {0,3})(`{3,}|~{3,})[ \t]*([^\s`]*)")

    # Inline link, not preceded by '!' (images)
    LINK_PATTERN = re.compile(
        r"(?<!!)\[([^\]]*)\]\(\s*<?([^)\s>]+)>?(?:\s+[\"'][^\"']*[\"'])?\s*\)"
    )

    SCHEME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")

    LEADING_BLANK_LINES = re.compile(r"\A(?:[ \t]*\r?\n)+")

    def parse(self, raw: str) -> ParsedDocument:
        """Parse raw markdown text.

        Never raises for content problems: a failure is reported with
        ``success=False`` and the raw text preserved as the body.

        Args:
            raw: Full document text

        Returns:
            ParsedDocument
        """
        try:
            frontmatter, body, has_frontmatter = self._parse_frontmatter(raw)
            headers, links, code_blocks = self._scan_body(body)
            title = self._resolve_title(frontmatter, headers)
        except Exception as e:
            logger.warning(
                "markdown_parse_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return ParsedDocument(success=False, body=raw or "", error=str(e))

        return ParsedDocument(
            success=True,
            body=body,
            frontmatter=frontmatter,
            has_frontmatter=has_frontmatter,
            headers=headers,
            links=links,
            code_blocks=code_blocks,
            title=title,
        )

    def parse_file(self, file_path: Path) -> ParsedDocument:
        """Read and parse a markdown file.

        Raises:
            FileNotFoundError: If file doesn't exist
            UnicodeDecodeError: If file encoding is invalid
        """
        if not file_path.exists():
            raise FileNotFoundError(f"Markdown file not found: {file_path}")

        try:
            content = file_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            logger.error("markdown_encoding_error", path=str(file_path), error=str(e))
            raise

        doc = self.parse(content)

        logger.debug(
            "markdown_parsed",
            path=str(file_path),
            success=doc.success,
            has_frontmatter=doc.has_frontmatter,
            heading_count=len(doc.headers),
            link_count=len(doc.links),
            code_block_count=len(doc.code_blocks),
        )

        return doc

    def _parse_frontmatter(self, raw: str) -> Tuple[Dict[str, Any], str, bool]:
        """Split optional YAML frontmatter from the body.

        Returns:
            Tuple of (frontmatter_dict, body, has_frontmatter)
        """
        text = raw.lstrip("\ufeff")
        lines = text.splitlines(keepends=True)

        if not lines or lines[0].strip() != self.FRONTMATTER_DELIMITER:
            return {}, text, False

        closing = None
        for i in range(1, len(lines)):
            if lines[i].strip() == self.FRONTMATTER_DELIMITER:
                closing = i
                break

        if closing is None:
            # Unterminated: the whole input is body
            return {}, text, False

        yaml_content = "".join(lines[1:closing])
        try:
            loaded = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            logger.warning(
                "frontmatter_parse_error",
                error=str(e),
                yaml_preview=yaml_content[:100],
            )
            return {}, text, False

        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            logger.warning("frontmatter_not_a_mapping", value_type=type(loaded).__name__)
            return {}, text, False

        frontmatter = {
            str(key).lower(): self._normalize_value(value)
            for key, value in loaded.items()
        }
        body = self.LEADING_BLANK_LINES.sub("", "".join(lines[closing + 1:]))

        return frontmatter, body, True

    def _normalize_value(self, value: Any) -> Any:
        """Recursively convert YAML values into plain lists, str-keyed dicts and scalars."""
        if isinstance(value, dict):
            return {str(k): self._normalize_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self._normalize_value(v) for v in value]
        # Convert date/datetime objects to ISO format strings
        if hasattr(value, "isoformat"):
            return value.isoformat()
        return value

    def _scan_body(self, body: str) -> Tuple[List[Header], List[Link], List[CodeBlock]]:
        """Single pass over body lines collecting headers, links and code blocks.

        Headings and links inside fenced code are ignored.
        """
        headers: List[Header] = []
        links: List[Link] = []
        code_blocks: List[CodeBlock] = []

        fence = None  # (marker, start_line, language, lines)
        offset = 0
        line_no = -1

        for line_no, line in enumerate(body.splitlines(keepends=True)):
            text = line.rstrip("\r\n")

            if fence is not None:
                marker, start_line, language, code_lines = fence
                stripped = text.strip()
                if (
                    stripped.startswith(marker[0] * len(marker))
                    and set(stripped) == {marker[0]}
                ):
                    code_blocks.append(
                        self._make_code_block(language, code_lines, start_line, line_no)
                    )
                    fence = None
                else:
                    code_lines.append(text)
                offset += len(line)
                continue

            fence_match = self.FENCE_PATTERN.match(text)
            if fence_match:
                language = fence_match.group(3) or None
                fence = (fence_match.group(2), line_no, language, [])
                offset += len(line)
                continue

            heading_match = self.HEADING_PATTERN.match(text)
            if heading_match:
                headers.append(
                    Header(
                        level=len(heading_match.group(1)),
                        text=heading_match.group(2).strip(),
                        line=line_no,
                        offset=offset,
                    )
                )

            for link_match in self.LINK_PATTERN.finditer(text):
                target = link_match.group(2).strip()
                if self._is_internal_link(target):
                    links.append(
                        Link(text=link_match.group(1).strip(), target=target, line=line_no)
                    )

            offset += len(line)

        if fence is not None:
            # Unclosed fence runs to the end of the body
            _, start_line, language, code_lines = fence
            code_blocks.append(
                self._make_code_block(language, code_lines, start_line, max(line_no, start_line))
            )

        return headers, links, code_blocks

    def _make_code_block(
        self, language: Optional[str], lines: List[str], start_line: int, end_line: int
    ) -> CodeBlock:
        code = textwrap.dedent("\n".join(lines)).strip("\n")
        return CodeBlock(
            language=language,
            code=code,
            start_line=start_line,
            end_line=end_line,
        )

    def _is_internal_link(self, target: str) -> bool:
        if not target or target.startswith("#") or target.startswith("//"):
            return False
        return not self.SCHEME_PATTERN.match(target)

    def _resolve_title(self, frontmatter: Dict[str, Any], headers: List[Header]) -> str:
        title = frontmatter.get("title")
        if isinstance(title, str) and title.strip():
            return title.strip()
        for header in headers:
            if header.level == 1:
                return header.text
        return ""

    def get_heading_context(self, headers: List[Header], offset: int) -> str:
        """Get hierarchical heading context for a given body offset.

        Args:
            headers: All headers of the document
            offset: Character offset to get context for

        Returns:
            Heading context string like "# Main > ## Sub > ### Detail"
        """
        context_stack: List[Header] = []

        for header in headers:
            if header.offset > offset:
                break
            # Pop headings at same or deeper level
            while context_stack and context_stack[-1].level >= header.level:
                context_stack.pop()
            context_stack.append(header)

        return " > ".join(f"{'#' * h.level} {h.text}" for h in context_stack)


# Singleton instance for convenience
_parser_instance = None


def get_parser() -> MarkdownParser:
    """Get a singleton markdown parser instance."""
    global _parser_instance
    if _parser_instance is None:
        _parser_instance = MarkdownParser()
    return _parser_instance

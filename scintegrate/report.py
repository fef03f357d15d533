"""
Tutorial report builder.

Collects narrative text, folded code blocks, numbered figures and tables
and renders them to a single Markdown document with a table of contents,
resolved cross-references and a bibliography. Cross-references are
written as ``@ref(label)`` and citations as ``[@key]``; both are checked
when the report is rendered.
"""

import os
import re
import matplotlib.pyplot as plt
import pandas as pd
import yaml
from pathlib import Path
from typing import Dict, List, Optional, Tuple


REF_PATTERN = re.compile(r"@ref\(([^)\s]+)\)")
# [@key] or [@key1; @key2]
CITE_KEY = r"@[^\]\s;,]+"
CITE_PATTERN = re.compile(rf"\[({CITE_KEY}(?:\s*;\s*{CITE_KEY})*)\]")
BRACKET_PATTERN = re.compile(r"\[@[^\]]*\]")

# Markdown renders ## to ######; level 1 sections are ##
MAX_SECTION_LEVEL = 5


class ReportError(ValueError):
    """Raised for unresolved cross-references, citations or duplicate labels."""


def load_bibliography(path: str) -> Dict[str, dict]:
    """
    Load a YAML citation-key file.

    The file maps citation keys to entries with at least ``author``,
    ``title`` and ``year``; ``journal`` and ``doi`` are optional.
    """
    with open(path) as f:
        entries = yaml.safe_load(f) or {}

    if not isinstance(entries, dict):
        raise ReportError(f"Bibliography {path} must map citation keys to entries")

    for key, entry in entries.items():
        missing = [f for f in ("author", "title", "year") if f not in (entry or {})]
        if missing:
            raise ReportError(f"Bibliography entry '{key}' is missing {missing}")

    return entries


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def _markdown_table(df: pd.DataFrame, float_format: str = ".3g") -> str:
    return df.to_markdown(floatfmt=float_format)


class TutorialReport:
    """
    Markdown tutorial document with numbered figures and tables.

    Parameters
    ----------
    title : str
        Document title.
    bibliography : dict, optional
        Citation key -> entry, see ``load_bibliography``.
    assets_dir : str, optional
        Directory where figures are saved. Required for ``figure()``.
    author : str, optional
        Shown below the title.
    """

    def __init__(
        self,
        title: str,
        bibliography: Optional[Dict[str, dict]] = None,
        assets_dir: Optional[str] = None,
        author: Optional[str] = None,
    ):
        self.title = title
        self.bibliography = bibliography or {}
        self.assets_dir = Path(assets_dir) if assets_dir is not None else None
        self.author = author

        self._blocks: List[Tuple] = []
        self._headings: List[Tuple[int, str, str, str]] = []
        self._section_counters = [0] * MAX_SECTION_LEVEL
        self._labels: Dict[str, Tuple[str, int]] = {}
        self._n_figures = 0
        self._n_tables = 0

    @staticmethod
    def ref(label: str) -> str:
        """Placeholder for a cross-reference to a figure or table."""
        return f"@ref({label})"

    @staticmethod
    def cite(*keys: str) -> str:
        """Placeholder for a citation of one or more keys."""
        if not keys:
            raise ReportError("cite() needs at least one key")
        return "[" + "; ".join(f"@{key}" for key in keys) + "]"

    def _register(self, label: str, kind: str, number: int) -> None:
        if not re.fullmatch(r"[A-Za-z0-9_:-]+", label):
            raise ReportError(f"Invalid label '{label}'")
        if label in self._labels:
            raise ReportError(f"Duplicate label '{label}'")
        self._labels[label] = (kind, number)

    def section(self, title: str, level: int = 1) -> None:
        if not 1 <= level <= len(self._section_counters):
            raise ReportError(f"Section level must be 1-{MAX_SECTION_LEVEL}, got {level}")
        self._section_counters[level - 1] += 1
        for i in range(level, len(self._section_counters)):
            self._section_counters[i] = 0
        number = ".".join(str(n) for n in self._section_counters[:level])
        anchor = _slug(f"{number} {title}")
        self._headings.append((level, number, title, anchor))
        self._blocks.append(("heading", level, number, title, anchor))

    def text(self, markdown: str) -> None:
        self._blocks.append(("text", markdown.strip()))

    def code(self, source: str, language: str = "python", folded: bool = True) -> None:
        self._blocks.append(("code", source.strip("\n"), language, folded))

    def figure(self, fig: plt.Figure, label: str, caption: str) -> int:
        """Save ``fig`` under ``assets_dir`` and add it; returns the figure number."""
        if self.assets_dir is None:
            raise ReportError("assets_dir is required to add figures")
        self._register(label, "Figure", self._n_figures + 1)
        self._n_figures += 1

        self.assets_dir.mkdir(parents=True, exist_ok=True)
        path = self.assets_dir / f"{label.replace(':', '-')}.png"
        fig.savefig(path, dpi=150, bbox_inches="tight")
        plt.close(fig)

        self._blocks.append(("figure", label, self._n_figures, caption, path))
        return self._n_figures

    def table(
        self,
        df: pd.DataFrame,
        label: str,
        caption: str,
        float_format: str = ".3g",
    ) -> int:
        """Add a table; returns the table number. ``float_format`` is a tabulate floatfmt."""
        self._register(label, "Table", self._n_tables + 1)
        self._n_tables += 1
        self._blocks.append(
            ("table", label, self._n_tables, caption, _markdown_table(df, float_format))
        )
        return self._n_tables

    def _resolve_refs(self, markdown: str) -> str:
        unknown = sorted(set(REF_PATTERN.findall(markdown)) - set(self._labels))
        if unknown:
            raise ReportError(f"Unresolved cross-references: {unknown}")

        def replace(match):
            label = match.group(1)
            kind, number = self._labels[label]
            return f"[{kind} {number}](#{_slug(label)})"

        return REF_PATTERN.sub(replace, markdown)

    def _resolve_citations(self, markdown: str) -> Tuple[str, List[str]]:
        malformed = [
            m.group(0) for m in BRACKET_PATTERN.finditer(markdown)
            if not CITE_PATTERN.fullmatch(m.group(0))
        ]
        if malformed:
            raise ReportError(f"Malformed citations: {malformed}")

        groups = [re.findall(r"@([^\s;]+)", g) for g in CITE_PATTERN.findall(markdown)]
        keys = [key for group in groups for key in group]
        unknown = sorted(set(keys) - set(self.bibliography))
        if unknown:
            raise ReportError(f"Citation keys not in bibliography: {unknown}")

        cited = list(dict.fromkeys(keys))

        def short(key):
            entry = self.bibliography[key]
            first_author = str(entry["author"]).split(",")[0].split(" and ")[0].strip()
            return f"[{first_author}, {entry['year']}](#ref-{_slug(key)})"

        def replace(match):
            group = re.findall(r"@([^\s;]+)", match.group(1))
            return "(" + "; ".join(short(key) for key in group) + ")"

        return CITE_PATTERN.sub(replace, markdown), cited

    def _render_bibliography(self, cited: List[str]) -> List[str]:
        lines = ["## References", ""]
        for key in sorted(cited, key=lambda k: (str(self.bibliography[k]["author"]), k)):
            entry = self.bibliography[key]
            line = f"<a id=\"ref-{_slug(key)}\"></a>{entry['author']} ({entry['year']}). {entry['title']}."
            if entry.get("journal"):
                line += f" *{entry['journal']}*."
            if entry.get("doi"):
                line += f" https://doi.org/{entry['doi']}"
            lines.extend([line, ""])
        return lines

    def render(self, base_dir: Optional[str] = None) -> str:
        """
        Render the document to Markdown.

        Parameters
        ----------
        base_dir : str, optional
            Directory the Markdown file will live in; figure paths are
            written relative to it.
        """
        lines = [f"# {self.title}", ""]
        if self.author:
            lines.extend([f"*{self.author}*", ""])

        if self._headings:
            lines.extend(["**Contents**", ""])
            for level, number, title, anchor in self._headings:
                indent = "  " * (level - 1)
                lines.append(f"{indent}- [{number} {title}](#{anchor})")
            lines.append("")

        for block in self._blocks:
            kind = block[0]
            if kind == "heading":
                _, level, number, title, anchor = block
                lines.extend([f"<a id=\"{anchor}\"></a>", f"{'#' * (level + 1)} {number} {title}", ""])
            elif kind == "text":
                lines.extend([block[1], ""])
            elif kind == "code":
                _, source, language, folded = block
                fence = [f"```{language}", source, "```"]
                if folded:
                    lines.extend(["<details><summary>Code</summary>", ""] + fence + ["", "</details>", ""])
                else:
                    lines.extend(fence + [""])
            elif kind == "figure":
                _, label, number, caption, path = block
                src = os.path.relpath(path, base_dir) if base_dir is not None else str(path)
                lines.extend([
                    f"<a id=\"{_slug(label)}\"></a>",
                    f"![Figure {number}]({Path(src).as_posix()})",
                    "",
                    f"**Figure {number}:** {caption}",
                    "",
                ])
            elif kind == "table":
                _, label, number, caption, table = block
                lines.extend([
                    f"<a id=\"{_slug(label)}\"></a>",
                    f"**Table {number}:** {caption}",
                    "",
                    table,
                    "",
                ])

        markdown = self._resolve_refs("\n".join(lines))
        markdown, cited = self._resolve_citations(markdown)
        if cited:
            markdown = markdown + "\n" + "\n".join(self._render_bibliography(cited))

        return markdown

    def write(self, path: str) -> Path:
        """Render and write the report; returns the output path."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render(base_dir=str(path.parent)))
        print(f"Report written to {path}")
        return path

"""Local stand-in agent for executor and end-to-end tests.

Reads the rendered prompt, writes the requested document and echoes the
prompt to stdout. Revision prompts append the sections reported missing.
"""

from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path

_WRITE_TARGET = re.compile(r"^Write the \w+ to: (?P<path>.+)$", re.MULTILINE)
_REVISE_TARGET = re.compile(r"^The \w+ at (?P<path>\S+) did not pass", re.MULTILINE)
_MISSING_SECTION = re.compile(r"Missing required section: (?P<section>.+)$", re.MULTILINE)
_SECTION_ITEM = re.compile(r"^- (?P<section>.+)$", re.MULTILINE)


def main(argv: list[str] | None = None) -> int:
    """Run one deterministic agent turn."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--skip-section", action="append", default=[])
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    sys.stdout.write(prompt)

    revise = _REVISE_TARGET.search(prompt)
    if revise is not None:
        path = Path(revise.group("path"))
        missing = [match.group("section").strip() for match in _MISSING_SECTION.finditer(prompt)]
        existing = path.read_text("utf-8") if path.exists() else ""
        path.write_text(existing + "".join(f"\n## {section}\n\nAdded.\n" for section in missing), "utf-8")
        return args.exit_code

    target = _WRITE_TARGET.search(prompt)
    if target is not None:
        path = Path(target.group("path").strip())
        sections = [
            match.group("section").strip()
            for match in _SECTION_ITEM.finditer(prompt)
            if match.group("section").strip() not in args.skip_section
        ]
        path.parent.mkdir(parents=True, exist_ok=True)
        body = "".join(f"\n## {section}\n\nGenerated.\n" for section in sections)
        path.write_text(f"# Generated\n{body}", "utf-8")
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

"""Template variable substitution for node prompts, bodies and emails.

Supported tokens:
- ``{{input}}``: the run input
- ``{{previous_output}}``: joined output of the node's live dependencies
- ``{{node_<id>_output}}``: output of a specific node in this run

Substitution is a single pass: text inserted for one token is never scanned
for further tokens. Unknown tokens are left as literal text.
"""

import json
import re
from collections.abc import Mapping
from typing import Any

from flowrunner.core.graph_schema import NodeResult

_TOKEN_RE = re.compile(r"\{\{(input|previous_output|node_(\w+?)_output)\}\}")

# Email templates also accept the older {{<nodeId>_output}} form
_EMAIL_TOKEN_RE = re.compile(r"\{\{(input|previous_output|node_(\w+?)_output|(\w+?)_output)\}\}")


def output_to_text(output: Any) -> str:
    """Render a node output as text: strings verbatim, anything else as JSON.

    A missing output renders as the JSON empty string (``""``).
    """
    if isinstance(output, str):
        return output
    if output is None:
        return json.dumps("")
    return json.dumps(output, ensure_ascii=False, default=str)


def _node_output(results: Mapping[str, NodeResult], node_id: str) -> str:
    result = results.get(node_id)
    return output_to_text(result.output if result is not None else None)


def interpolate(
    template: str,
    input: str,
    previous_output: str,
    all_results: Mapping[str, NodeResult],
    legacy_node_tokens: bool = False,
) -> str:
    """Resolve template tokens against the run input and node results.

    Args:
        template: Text containing ``{{...}}`` tokens
        input: The run input
        previous_output: Joined output of the node's dependencies
        all_results: Results recorded so far in this run
        legacy_node_tokens: Also resolve ``{{<nodeId>_output}}``, but only for
            ids present in ``all_results`` (others stay literal)
    """

    def replace(match: re.Match) -> str:
        token = match.group(1)
        if token == "input":
            return input
        if token == "previous_output":
            return previous_output
        if match.group(2) is not None:
            return _node_output(all_results, match.group(2))
        legacy_id = match.group(3)
        if legacy_id in all_results:
            return _node_output(all_results, legacy_id)
        return match.group(0)

    pattern = _EMAIL_TOKEN_RE if legacy_node_tokens else _TOKEN_RE
    return pattern.sub(replace, template)

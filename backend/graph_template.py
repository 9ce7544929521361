"""
Workflow graph templates.

A template is a ComfyUI API-format graph: node id -> {"inputs": {...},
"class_type": "..."}. Templates are shared read-only; every submission
works on a structural clone with a handful of documented inputs replaced
(image filename, prompts, seed, step count). Injection points missing
from a template are skipped, so one code path serves graphs of different
shapes.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from backend.comfyui_errors import TemplateError

logger = logging.getLogger("comfyui.template")

Graph = Dict[str, Dict[str, Any]]
FieldKey = Union[Tuple[str, str], str]


def clone_graph(obj: Any) -> Any:
    """
    Structural copy of nested dicts/lists.

    Leaves are copied by reference, so non-JSON values survive
    (unlike a serialize round-trip).
    """
    if isinstance(obj, dict):
        return {k: clone_graph(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [clone_graph(v) for v in obj]
    if isinstance(obj, tuple):
        return tuple(clone_graph(v) for v in obj)
    return obj


def _split_key(key: FieldKey) -> Tuple[str, str]:
    if isinstance(key, tuple):
        node_id, input_key = key
        return str(node_id), input_key
    node_id, sep, input_key = str(key).partition(".")
    if not sep or not input_key:
        raise ValueError(f"Field key '{key}' must look like 'node_id.input_key'")
    return node_id, input_key


def apply_parameters(template: Mapping[str, Any], field_map: Mapping[FieldKey, Any]) -> Graph:
    """
    Clone `template` and overwrite the inputs named in `field_map`.

    Keys are (node_id, input_key) tuples or "node_id.input_key" strings.
    A key whose node or input is absent from the template is ignored.
    The template itself is never modified.
    """
    graph = clone_graph(dict(template))
    for key, value in field_map.items():
        node_id, input_key = _split_key(key)
        node = graph.get(node_id)
        inputs = node.get("inputs") if isinstance(node, dict) else None
        if not isinstance(inputs, dict) or input_key not in inputs:
            logger.debug(f"Skipping injection {node_id}.{input_key}: not in template")
            continue
        inputs[input_key] = clone_graph(value)
    return graph


def load_template(path: Union[str, Path]) -> Graph:
    """Read an API-format graph from JSON. A {"prompt": {...}} wrapper is unwrapped."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise TemplateError(f"Cannot load workflow template {path}: {e}") from e

    if isinstance(data, dict) and isinstance(data.get("prompt"), dict):
        data = data["prompt"]
    if not isinstance(data, dict) or not all(isinstance(v, dict) for v in data.values()):
        raise TemplateError(f"Workflow template {path} is not an API-format graph")
    return data


@dataclass(frozen=True)
class InjectionPoints:
    """Documented mutation targets of a template, by role."""
    load_image_nodes: Tuple[str, ...] = ()
    positive_prompt_nodes: Tuple[str, ...] = ()
    negative_prompt_nodes: Tuple[str, ...] = ()
    sampler_nodes: Tuple[str, ...] = ()
    image_key: str = "image"
    text_key: str = "text"
    seed_key: str = "seed"
    steps_key: str = "steps"

    def field_map(self, image: Optional[str] = None, positive: Optional[str] = None,
                  negative: Optional[str] = None, seed: Optional[int] = None,
                  steps: Optional[int] = None) -> Dict[Tuple[str, str], Any]:
        """Field map for the supplied values only (None = leave template value)."""
        fields: Dict[Tuple[str, str], Any] = {}

        def _put(nodes: Iterable[str], key: str, value: Any):
            if value is None:
                return
            for node_id in nodes:
                fields[(node_id, key)] = value

        _put(self.load_image_nodes, self.image_key, image)
        _put(self.positive_prompt_nodes, self.text_key, positive)
        _put(self.negative_prompt_nodes, self.text_key, negative)
        _put(self.sampler_nodes, self.seed_key, seed)
        _put(self.sampler_nodes, self.steps_key, steps)
        return fields


def _link_source(value: Any) -> Optional[str]:
    # API-format links are [source_node_id, output_index]
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return str(value[0])
    return None


def detect_injection_points(graph: Mapping[str, Any]) -> InjectionPoints:
    """
    Infer injection points from node types.

    LoadImage nodes take the image, KSampler-like nodes (anything with both
    seed and steps inputs) take seed/steps, and text-encode nodes are
    positive or negative according to the sampler link that consumes them.
    """
    images, samplers, positive, negative = [], [], [], []
    for node_id, node in graph.items():
        if not isinstance(node, dict):
            continue
        class_type = str(node.get("class_type", ""))
        inputs = node.get("inputs") or {}
        if class_type.startswith("LoadImage") and "image" in inputs:
            images.append(str(node_id))
        if "seed" in inputs and "steps" in inputs:
            samplers.append(str(node_id))
            pos = _link_source(inputs.get("positive"))
            neg = _link_source(inputs.get("negative"))
            if pos and "text" in (graph.get(pos, {}).get("inputs") or {}) and pos not in positive:
                positive.append(pos)
            if neg and "text" in (graph.get(neg, {}).get("inputs") or {}) and neg not in negative:
                negative.append(neg)

    return InjectionPoints(
        load_image_nodes=tuple(images),
        positive_prompt_nodes=tuple(positive),
        negative_prompt_nodes=tuple(negative),
        sampler_nodes=tuple(samplers),
    )

"""
A small document tree: tagged nodes with attributes, leaves holding values,
composable selectors, and selector-driven replacement.
"""
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union


class Leaf:
    """A tree leaf wrapping a single value (usually text)."""
    __slots__ = ("value",)

    def __init__(self, value: Any):
        self.value = value

    def __eq__(self, other):
        if not isinstance(other, Leaf):
            return NotImplemented
        return self.value == other.value

    def __repr__(self) -> str:
        return f"Leaf({self.value!r})"


class Node:
    """A tagged tree node with ordered children and string attributes."""
    __slots__ = ("tag", "children", "attributes")

    def __init__(self, tag: str, children: Union[Sequence[Any], Any] = (),
                 attributes: Optional[Dict[str, str]] = None):
        self.tag = tag
        if not isinstance(children, (list, tuple)):
            children = [children]
        self.children: List[Union['Node', Leaf]] = [
            c if isinstance(c, (Node, Leaf)) else Leaf(c) for c in children
        ]
        self.attributes: Dict[str, str] = dict(attributes or {})

    def with_children(self, children: Sequence[Any]) -> 'Node':
        return Node(self.tag, children, self.attributes)

    def __eq__(self, other):
        if not isinstance(other, Node):
            return NotImplemented
        return (self.tag == other.tag and self.attributes == other.attributes
                and self.children == other.children)

    def __repr__(self) -> str:
        attrs = f", {self.attributes!r}" if self.attributes else ""
        return f"Node({self.tag!r}, {self.children!r}{attrs})"


def children(node: Union[Node, Leaf]) -> List[Union[Node, Leaf]]:
    return list(node.children) if isinstance(node, Node) else []


def attributes(node: Union[Node, Leaf]) -> Dict[str, str]:
    return node.attributes if isinstance(node, Node) else {}


def gettext(node: Union[Node, Leaf]) -> str:
    """Concatenates the text of every leaf below `node`, in order."""
    if isinstance(node, Leaf):
        return node.value if isinstance(node.value, str) else str(node.value)
    return "".join(gettext(c) for c in node.children)


# =================================================================
# Selectors
# =================================================================

class Selector:
    """A predicate over nodes; combine with `&`, `|` and `~`."""

    def matches(self, node: Union[Node, Leaf]) -> bool:
        raise NotImplementedError

    def __call__(self, node) -> bool:
        return self.matches(node)

    def __and__(self, other) -> 'Selector':
        return SelectAnd(self, as_selector(other))

    def __or__(self, other) -> 'Selector':
        return SelectOr(self, as_selector(other))

    def __invert__(self) -> 'Selector':
        return SelectNot(self)


class SelectFn(Selector):
    """Wraps a plain predicate; it is only ever called with `Node`s."""
    def __init__(self, fn: Callable[['Node'], bool]):
        self.fn = fn

    def matches(self, node) -> bool:
        return isinstance(node, Node) and bool(self.fn(node))

    def __repr__(self) -> str:
        return f"SelectFn({self.fn!r})"


class SelectTag(Selector):
    def __init__(self, tag: str):
        self.tag = tag

    def matches(self, node) -> bool:
        return isinstance(node, Node) and node.tag == self.tag

    def __repr__(self) -> str:
        return f"SelectTag({self.tag!r})"


class SelectAttrEq(Selector):
    def __init__(self, name: str, value: str):
        self.name = name
        self.value = value

    def matches(self, node) -> bool:
        return isinstance(node, Node) and node.attributes.get(self.name) == self.value

    def __repr__(self) -> str:
        return f"SelectAttrEq({self.name!r}, {self.value!r})"


class SelectHasAttr(Selector):
    def __init__(self, name: str):
        self.name = name

    def matches(self, node) -> bool:
        return isinstance(node, Node) and self.name in node.attributes

    def __repr__(self) -> str:
        return f"SelectHasAttr({self.name!r})"


class SelectAnd(Selector):
    def __init__(self, *selectors: Selector):
        self.selectors = selectors

    def matches(self, node) -> bool:
        return all(s.matches(node) for s in self.selectors)

    def __repr__(self) -> str:
        return " & ".join(map(repr, self.selectors))


class SelectOr(Selector):
    def __init__(self, *selectors: Selector):
        self.selectors = selectors

    def matches(self, node) -> bool:
        return any(s.matches(node) for s in self.selectors)

    def __repr__(self) -> str:
        return " | ".join(map(repr, self.selectors))


class SelectNot(Selector):
    def __init__(self, selector: Selector):
        self.selector = selector

    def matches(self, node) -> bool:
        return not self.selector.matches(node)

    def __repr__(self) -> str:
        return f"~{self.selector!r}"


def as_selector(obj: Any) -> Selector:
    if isinstance(obj, Selector):
        return obj
    if callable(obj):
        return SelectFn(obj)
    raise TypeError(f"Expected a Selector or callable, got {type(obj).__name__}")


# =================================================================
# Queries and rewriting
# =================================================================

def select(doc: Union[Node, Leaf], selector) -> Iterator[Union[Node, Leaf]]:
    """Yields matching nodes in document (pre-)order.

    A matching node is yielded as a whole; its descendants are not searched.
    """
    selector = as_selector(selector)
    if selector.matches(doc):
        yield doc
        return
    for child in children(doc):
        yield from select(child, selector)


def selectfirst(doc: Union[Node, Leaf], selector) -> Optional[Union[Node, Leaf]]:
    return next(select(doc, selector), None)


def replace_many(doc: Union[Node, Leaf], new_nodes: Sequence[Any], selector) -> Union[Node, Leaf]:
    """Replaces the k-th match of `selector` by `new_nodes[k]`; everything else is kept."""
    selector = as_selector(selector)
    replacements = iter(new_nodes)
    consumed = 0

    def rebuild(node):
        nonlocal consumed
        if selector.matches(node):
            try:
                new = next(replacements)
            except StopIteration:
                raise ValueError(f"Selector matched more than {len(new_nodes)} nodes") from None
            consumed += 1
            return new
        if isinstance(node, Leaf):
            return node
        return node.with_children([rebuild(c) for c in node.children])

    out = rebuild(doc)
    if consumed != len(new_nodes):
        raise ValueError(f"Got {len(new_nodes)} replacement nodes but selector matched {consumed}")
    return out

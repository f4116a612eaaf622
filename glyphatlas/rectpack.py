from dataclasses import dataclass
from typing import List, Optional, Tuple, Any
from glyphatlas.helpers import DEBUG

class PackingOverflowError(RuntimeError):
    """Not every rectangle fit. Raised internally, growing the atlas is the caller's job."""

@dataclass
class Rect:
    w:int
    h:int
    key:Any = None # correlation key, untouched by the packer
    x:int = 0
    y:int = 0
    placed:bool = False

@dataclass
class SkylineNode:
    x:int
    y:Optional[int]
    next:Optional[int] = None # index into RectPack.nodes

class RectPack:
    """Bottom-left skyline packer (stb_rect_pack's default heuristic).

    All nodes live in self.nodes and are addressed by index. The first num_nodes are the pool, the last two are
    the initial skyline: a node at (0, 0) and the right boundary sentinel at (width, None). Nodes dropped from the
    skyline go onto the self.free stack.
    """
    def __init__(self, width:int, height:int, num_nodes:int):
        assert width > 0 and height > 0, f"Invalid atlas size {width}x{height}"
        assert num_nodes >= width, f"{num_nodes=} can't represent every skyline of a {width} wide atlas"
        self.width, self.height, self.num_nodes = width, height, num_nodes
        self.nodes = [SkylineNode(0, 0) for _ in range(num_nodes)]
        self.nodes.append(SkylineNode(width, None))
        self.nodes.append(SkylineNode(0, 0, next=num_nodes))
        self.head = num_nodes + 1
        self.free = list(reversed(range(num_nodes)))

    def active(self) -> List[int]:
        ret, node = [], self.head
        while node is not None:
            ret.append(node)
            node = self.nodes[node].next
        return ret

    def skyline(self) -> List[Tuple[int, Optional[int]]]: return [(self.nodes[i].x, self.nodes[i].y) for i in self.active()]

    def check_invariants(self):
        active = self.active()
        xs = [self.nodes[i].x for i in active]
        assert all(x0 < x1 for x0, x1 in zip(xs, xs[1:])), f"skyline not strictly increasing: {xs}"
        assert xs[-1] == self.width and self.nodes[active[-1]].y is None, f"skyline must end in the sentinel: {self.skyline()}"
        assert all(self.nodes[i].y is not None for i in active[:-1]), self.skyline()
        assert len(active) + len(self.free) == self.num_nodes + 2, (len(active), len(self.free), self.num_nodes)
        assert not set(active) & set(self.free), "node is both active and free"

    def _find_min_y(self, first:int, width:int) -> int:
        """Highest skyline point under [x0, x0 + width) where x0 is the x of node first"""
        node, x1, min_y = first, self.nodes[first].x + width, 0
        while self.nodes[node].x < x1:
            min_y = max(min_y, self.nodes[node].y)
            node = self.nodes[node].next
        return min_y

    def _find_best_pos(self, width:int, height:int) -> Optional[Tuple[Optional[int], int, int]]:
        """Returns (prev, node, y): place at node's x, prev is the node linking to it or None if node is the head."""
        if width > self.width or height > self.height: return None
        best, best_y, prev, node = None, None, None, self.head
        while self.nodes[node].x + width <= self.width:
            y = self._find_min_y(node, width)
            if best_y is None or y < best_y: best, best_y = (prev, node), y
            prev, node = node, self.nodes[node].next
        return None if best is None else (*best, best_y)

    def _pack_rectangle(self, width:int, height:int) -> Optional[Tuple[int, int]]:
        pos = self._find_best_pos(width, height)
        if pos is None or pos[2] + height > self.height or not self.free: return None
        prev, cur, y = pos
        x, x1 = self.nodes[cur].x, self.nodes[cur].x + width

        new = self.free.pop()
        self.nodes[new].x, self.nodes[new].y = x, y + height
        if prev is None: self.head = new
        else: self.nodes[prev].next = new

        # free every node the new rectangle covers completely
        while self.nodes[cur].next is not None and self.nodes[self.nodes[cur].next].x <= x1:
            nxt = self.nodes[cur].next
            self.nodes[cur].next = None
            self.free.append(cur)
            cur = nxt
        self.nodes[new].next = cur
        # cur straddles the right edge, the part right of x1 stays visible
        if self.nodes[cur].x < x1: self.nodes[cur].x = x1

        if DEBUG >= 2: self.check_invariants()
        return x, y

    def pack(self, rects:List[Rect]) -> bool:
        """Places as many rects as possible, tallest first. Returns True if all were placed.
        rects keep their order, each gets x, y and placed set."""
        order = sorted(range(len(rects)), key=lambda i: (-rects[i].h, -rects[i].w)) # stable, ties keep input order
        for i in order:
            r = rects[i]
            if r.w == 0 or r.h == 0: # empty rect needs no space
                r.x, r.y, r.placed = 0, 0, True
                continue
            pos = self._pack_rectangle(r.w, r.h)
            if pos is None: r.x, r.y, r.placed = 0, 0, False
            else: (r.x, r.y), r.placed = pos, True
        return all(r.placed for r in rects)

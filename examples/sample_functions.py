"""
Example function tree for the RPC server.

Serve it with:
    python main.py --mode server --functions examples/sample_functions.py
"""

import asyncio
import math
from typing import Any, Dict, List

from ezrpc import CallError, FunctionTree


def add(numbers: List[float]) -> float:
    """Add a list of numbers."""
    return sum(numbers)


def divide(pair: List[float]) -> float:
    """Divide the first number by the second."""
    a, b = pair
    if b == 0:
        raise CallError("Cannot divide by zero", detail={"dividend": a})
    return a / b


def sqrt(value: float) -> float:
    if value < 0:
        raise ValueError("math domain error")
    return math.sqrt(value)


def hello(input_data: Any) -> str:
    """Return a personalized greeting."""
    name = input_data.get("name", "World") if isinstance(input_data, dict) else "World"
    return f"Hello, {name}!"


async def slow_echo(input_data: Dict[str, Any]) -> Any:
    """Echo ``value`` back after sleeping ``delay`` seconds."""
    await asyncio.sleep(float(input_data.get("delay", 1)))
    return input_data.get("value")


def statistics(data: List[float]) -> Dict[str, float]:
    """Basic statistics over a list of numbers."""
    if not data:
        raise CallError("Data list cannot be empty")
    return {
        "count": len(data),
        "sum": sum(data),
        "avg": sum(data) / len(data),
        "min": min(data),
        "max": max(data)
    }


interface = FunctionTree()
interface.add("hello", hello)
interface.add("math.add", add)
interface.add("math.divide", divide)
interface.add("math.sqrt", sqrt)
interface.add("data.statistics", statistics)
interface.add("utils.slow_echo", slow_echo)
interface.add("version", "1.0")

"""Rich-based output utilities for the nestor CLI."""

from rich.console import Console

# Shared console instance
console = Console()


def print_error(message: str) -> None:
    """Print an error message in red."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def print_info(message: str) -> None:
    console.print(f"[dim]{message}[/dim]")

"""Command handlers wired into the root typer app by cpc.cli."""

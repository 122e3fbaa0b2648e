"""CLI entry point for python -m renderflow"""
from renderflow.cli.commands import app

if __name__ == "__main__":
    app()

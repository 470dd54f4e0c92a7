"""命令行入口"""
from .commands import cli


def main():
    cli()

from agentbus.cli import cli


def main():
    """Main entry point for agentbus."""
    cli()


if __name__ == '__main__':
    main()

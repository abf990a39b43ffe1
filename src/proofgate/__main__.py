"""Allow running proofgate as a module: python -m proofgate"""

from proofgate.cli import main

if __name__ == "__main__":
    main()

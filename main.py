"""
Entry point script for the gateway.
This allows running the service directly from the project root.
"""
from ollama_gateway.service.api import main

if __name__ == "__main__":
    main()

from mcp_forge_sandbox.server import main

main()

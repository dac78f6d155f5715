from codespace_mcp.main import main

main()

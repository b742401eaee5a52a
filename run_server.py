import os

import uvicorn

if __name__ == "__main__":
    port = int(os.environ.get("SCENARIO_TREE_PORT", "8000"))

    print("Starting Scenario Tree API Server...")
    print(f"Docs available at: http://localhost:{port}/docs")

    uvicorn.run(
        "scenario_tree.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("SCENARIO_TREE_RELOAD", "0") == "1",
    )

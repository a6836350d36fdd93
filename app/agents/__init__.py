"""
Autonomous buyer agents.

Key components:
- models: BuyerAgent, AgentAction and the closed ActionType enum
- store: agent records (spent, quantity acquired, status)
- actions: append-only action log feeding the live stream
- quality: sample quality assessment
- policy: purchase decision
- executor: one acquisition cycle
- scheduler: periodic cycles per running agent
- wallets: agent wallets, payment signing and balances
"""

"""
Engine Layer

Runtime components that consume the dataflow layer: configuration, the chart
subscription lifecycle and the ticker board.
"""

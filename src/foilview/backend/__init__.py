# Backend: stage orchestration layer
# Contains: drivers, services, controllers

"""Generational genetic search over strategy parameters."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence

import numpy as np

from optimization.parameters import (
    ParameterDefinition,
    ParameterSet,
    clamp,
    copy_parameters,
    get_value,
    oriented_score,
    sample_parameter_sets,
    set_value,
)

DEFAULT_POPULATION_SIZE = 30
DEFAULT_MUTATION_RATE = 0.2
MUTATION_SCALE = 0.2


@dataclass
class Individual:
    parameters: ParameterSet
    fitness: float = float('-inf')


class GeneticOptimizer:
    """
    Elitist genetic algorithm: the fitter half survives each generation and
    the rest is refilled with mutated blend-crossover children.
    """

    def __init__(
        self,
        definitions: Sequence[ParameterDefinition],
        objectives: Sequence[str],
        population_size: int = DEFAULT_POPULATION_SIZE,
        seed: Optional[int] = None,
        mutation_rate: float = DEFAULT_MUTATION_RATE,
    ) -> None:
        if not objectives:
            raise ValueError("At least one objective is required")
        if population_size < 2:
            raise ValueError("population_size must be at least 2")
        self.definitions = list(definitions)
        self.objectives = list(objectives)
        self.population_size = int(population_size)
        self.mutation_rate = float(mutation_rate)
        self.random_state = np.random.RandomState(seed)
        self.generation = 0
        self.population: List[Individual] = [
            Individual(parameters)
            for parameters in sample_parameter_sets(self.definitions, self.population_size, self.random_state)
        ]

    def get_population(self) -> List[ParameterSet]:
        return [copy_parameters(individual.parameters) for individual in self.population]

    def fitness_from_scores(self, scores: Mapping[str, float]) -> float:
        return oriented_score(scores, self.objectives[0])

    def set_fitness(self, index: int, fitness: float) -> None:
        self.population[index].fitness = float(fitness)

    def _ranked(self) -> List[Individual]:
        return sorted(self.population, key=lambda individual: individual.fitness, reverse=True)

    def select(self, count: int) -> List[ParameterSet]:
        return [copy_parameters(individual.parameters) for individual in self._ranked()[:count]]

    def crossover(self, parent1: ParameterSet, parent2: ParameterSet) -> ParameterSet:
        child: ParameterSet = {}
        for definition in self.definitions:
            value1 = get_value(parent1, definition)
            value2 = get_value(parent2, definition)
            if value1 is None or value2 is None:
                continue
            if definition.is_discrete:
                value = value1 if self.random_state.rand() < 0.5 else value2
            else:
                alpha = self.random_state.rand()
                value = value1 * alpha + value2 * (1 - alpha)
            set_value(child, definition, value)
        return child

    def mutate(self, individual: ParameterSet, mutation_rate: Optional[float] = None) -> ParameterSet:
        rate = self.mutation_rate if mutation_rate is None else mutation_rate
        mutated = copy_parameters(individual)
        for definition in self.definitions:
            if self.random_state.rand() > rate:
                continue
            if definition.is_discrete:
                values = definition.values
                set_value(mutated, definition, float(values[self.random_state.randint(len(values))]))
                continue
            current = get_value(mutated, definition)
            if current is None:
                continue
            low, high = definition.bounds()
            noise = (self.random_state.rand() - 0.5) * (high - low) * MUTATION_SCALE
            set_value(mutated, definition, clamp(current + noise, low, high))
        return mutated

    def evolve(self) -> None:
        parent_count = self.population_size // 2
        survivors = self._ranked()[:parent_count]
        parents = [individual.parameters for individual in survivors]

        offspring: List[Individual] = []
        for _ in range(self.population_size - parent_count):
            parent1 = parents[self.random_state.randint(len(parents))]
            parent2 = parents[self.random_state.randint(len(parents))]
            offspring.append(Individual(self.mutate(self.crossover(parent1, parent2))))

        self.population = survivors + offspring
        self.generation += 1
